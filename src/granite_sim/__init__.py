"""
Granite Bank: a classroom bank-run simulation.

A facilitator walks a room of depositors and wholesale lenders through a
five-phase liquidity crisis at a fictional mortgage bank. Choices feed a
shared liquidity model; the run ends in a central-bank rescue or collapse.
"""

from .config import SimulationConfig, load_config
from .engine import GameEngine

__version__ = "0.1.0"

__all__ = ["GameEngine", "SimulationConfig", "load_config", "__version__"]
