"""
Simulation tunables.

Every number a facilitator might want to adjust between classes lives here.
Defaults reproduce the standard Granite Bank session. Overrides are read from
an optional YAML file:

    protection_limit: 50000
    tick_seconds: 1.5
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError


class SimulationConfig(BaseModel):
    """Tunable parameters for a session."""

    # Enrollment
    depositor_target: int = 50
    wholesale_target: int = 13
    wholesale_quiz_threshold: int = 2
    join_token_ttl_seconds: int = 600
    min_name_length: int = 3
    max_name_length: int = 40

    # Depositor money rules
    protection_limit: float = 35_000
    depositor_base_balance: float = 10_000
    max_additional_deposit: float = 40_000
    max_principal: float = 50_000
    phase2_exit_penalty: float = 0.40
    phase3_exit_haircut: float = 0.40
    convert_fee: float = 0.15
    hedge_rates: dict[str, float] = Field(
        default_factory=lambda: {"basic": 0.005, "full": 0.012}
    )

    # Wholesale money rules
    wholesale_base_balance: float = 500_000_000
    max_add_more: float = 500_000_000
    spread_levels: list[int] = Field(default_factory=lambda: [25, 75, 150])
    reduce_levels: list[int] = Field(default_factory=lambda: [25, 50, 75])
    punitive_spread_bps: int = 200

    # Accrual
    tick_seconds: float = 2.0
    accrual_fraction: float = 0.0008

    # Bookkeeping
    feed_limit: int = 60
    action_log_limit: int = 40
    pseudonym_prefix: str = "User_"


def load_config(path: Path | str | None = None) -> SimulationConfig:
    """
    Load config from YAML, falling back to defaults.

    A missing file yields defaults. A file that is not a mapping, or that
    contains values of the wrong type, raises ValueError.
    """
    if path is None:
        return SimulationConfig()

    path = Path(path)
    if not path.exists():
        return SimulationConfig()

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Malformed config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    try:
        return SimulationConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid config in {path}: {e}") from e
