"""
Pydantic models for Granite Bank session state.

All state is versioned for migration support.
Designed to serialize to JSON as a single blob: one GameState per server.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class Phase(str, Enum):
    LOBBY = "lobby"
    PHASE1 = "phase1"    # Product / facility selection
    PHASE2 = "phase2"    # Yield chase, first stress events
    PHASE3 = "phase3"    # Run underway, withdrawal queues
    PHASE4 = "phase4"    # Final window, awaiting central bank
    END = "end"


PHASE_ORDER: list[Phase] = list(Phase)


def next_phase(phase: Phase) -> Phase | None:
    """Immediate successor of a phase, or None at the end."""
    idx = PHASE_ORDER.index(phase)
    if idx + 1 < len(PHASE_ORDER):
        return PHASE_ORDER[idx + 1]
    return None


class Role(str, Enum):
    DEPOSITOR = "depositor"
    WHOLESALE = "wholesale"


class BankStatus(str, Enum):
    STABLE = "STABLE"
    RESCUED = "RESCUED"
    COLLAPSED = "COLLAPSED"


class BoeStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Scenario(str, Enum):
    BASE = "BASE CASE"
    MODERATE = "MODERATE STRESS"
    SEVERE = "SEVERE STRESS"


class Bucket(str, Enum):
    SHORT = "0-3m"
    MEDIUM = "3-12m"
    LONG = "12-36m"
    OTHER = "36m+"


class FeedType(str, Enum):
    INFO = "info"
    PHASE = "phase"
    ALERT = "alert"
    CRITICAL = "critical"
    BROADCAST = "broadcast"


class SelectionStage(str, Enum):
    """Phase-1 selection lifecycle: Unset -> Drafted -> Committed <-> PendingChange."""
    UNSET = "unset"
    DRAFTED = "drafted"
    COMMITTED = "committed"
    PENDING_CHANGE = "pending_change"


class QueueState(str, Enum):
    NONE = "none"
    PROCESSING = "processing"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class QueueMode(str, Enum):
    FULL = "full"
    PROTECTED = "protected"


def generate_id() -> str:
    return str(uuid4())[:8]


def round_money(value: float) -> float:
    return round(float(value), 2)


# -----------------------------------------------------------------------------
# Catalogues
# -----------------------------------------------------------------------------

class Product(BaseModel):
    """A retail savings product a depositor can lock into."""
    id: str
    label: str
    rate: float                     # Annual percentage
    bucket: Bucket
    lock_risk: str
    phase1_selectable: bool = True


class Facility(BaseModel):
    """A wholesale funding facility a lender can deploy through."""
    id: str
    label: str
    spread_bps: int
    bucket: Bucket


PRODUCTS: dict[str, Product] = {
    p.id: p for p in [
        Product(id="current", label="Current Account", rate=2.1, bucket=Bucket.SHORT, lock_risk="low"),
        Product(id="notice_3m", label="3-Month Notice", rate=5.4, bucket=Bucket.SHORT, lock_risk="medium"),
        Product(id="fixed_1y", label="1-Year Fixed", rate=7.2, bucket=Bucket.MEDIUM, lock_risk="medium"),
        Product(id="bond_3y", label="3-Year Premier Bond", rate=9.8, bucket=Bucket.LONG, lock_risk="high"),
        Product(
            id="premier_142", label="Premier Bond 14.2%", rate=14.2,
            bucket=Bucket.LONG, lock_risk="extreme", phase1_selectable=False,
        ),
    ]
}

FACILITIES: dict[str, Facility] = {
    f.id: f for f in [
        Facility(id="overnight", label="Overnight Repo", spread_bps=8, bucket=Bucket.SHORT),
        Facility(id="week_1", label="1-Week Facility", spread_bps=12, bucket=Bucket.SHORT),
        Facility(id="month_3", label="3-Month Facility", spread_bps=18, bucket=Bucket.SHORT),
        Facility(id="year_1", label="12-Month Facility", spread_bps=28, bucket=Bucket.MEDIUM),
    ]
}

DEFAULT_PRODUCT = "current"
DEFAULT_FACILITY = "overnight"
PREMIER_PRODUCT = "premier_142"


# -----------------------------------------------------------------------------
# Participant state
# -----------------------------------------------------------------------------

class Commitment(BaseModel):
    """
    Two-stage phase-1 selection.

    A participant drafts an option, commits it (which starts an earnings
    cycle), and may later stage a change that only takes effect on the
    next commit. Each re-commit banks whatever accrued since the last one.
    """
    stage: SelectionStage = SelectionStage.UNSET
    draft: str | None = None
    pending: str | None = None
    cycle_base: float = 0.0         # Balance at the last commit point
    cycle_started_at: datetime | None = None
    banked: float = 0.0

    @property
    def confirmed(self) -> bool:
        return self.stage in (SelectionStage.COMMITTED, SelectionStage.PENDING_CHANGE)

    def choose(self, option: str) -> None:
        """Draft an option, or stage a change if already committed."""
        if self.confirmed:
            self.pending = option
            self.stage = SelectionStage.PENDING_CHANGE
        else:
            self.draft = option
            self.stage = SelectionStage.DRAFTED

    def cancel_change(self) -> None:
        self.pending = None
        if self.stage == SelectionStage.PENDING_CHANGE:
            self.stage = SelectionStage.COMMITTED

    def resolve_choice(self, current: str | None) -> str | None:
        """The option a commit right now would lock in."""
        if self.confirmed:
            return self.pending or current
        return self.draft or current

    def ticking(self, balance: float) -> float:
        """Earnings since the last commit point, not yet banked."""
        return max(0.0, round_money(balance - self.cycle_base))

    def commit(self, option: str, balance: float, now: datetime) -> float:
        """
        Lock in an option and start a fresh earnings cycle.

        Returns the amount banked by this commit (zero on first commit).
        """
        earned = self.ticking(balance) if self.confirmed else 0.0
        self.banked = round_money(self.banked + earned)
        self.stage = SelectionStage.COMMITTED
        self.draft = option
        self.pending = None
        self.cycle_base = round_money(balance)
        self.cycle_started_at = now
        return earned


# Allowed withdrawal-queue moves; cancelled is terminal
VALID_QUEUE_TRANSITIONS: dict[QueueState, set[QueueState]] = {
    QueueState.NONE: {QueueState.PROCESSING},
    QueueState.PROCESSING: {QueueState.PROCESSING, QueueState.PARTIAL, QueueState.CANCELLED},
    QueueState.PARTIAL: {QueueState.PROCESSING, QueueState.PARTIAL, QueueState.CANCELLED},
    QueueState.CANCELLED: set(),
}


class WithdrawalQueue(BaseModel):
    """A depositor's phase-3 withdrawal request."""
    state: QueueState = QueueState.NONE
    mode: QueueMode = QueueMode.FULL
    ref: str | None = None
    requested_amount: float = 0.0
    eta_hours: float = 0.0
    position: int = 0
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.state in (QueueState.PROCESSING, QueueState.PARTIAL)

    def can_move_to(self, target: QueueState) -> bool:
        return target in VALID_QUEUE_TRANSITIONS[self.state]


class DepositorAccount(BaseModel):
    role: Literal["depositor"] = "depositor"
    product: str | None = None
    commitment: Commitment = Field(default_factory=Commitment)
    draft_additional: float = 0.0
    hedged: bool = False
    hedge_type: str | None = None
    withdrew: bool = False
    withdrawn_at_phase: Phase | None = None
    exit_payout: float = 0.0
    exit_loss: float = 0.0
    exit_principal: float = 0.0
    exit_interest: float = 0.0
    upgrade_banked_interest: float = 0.0
    upgraded_at: datetime | None = None
    switched_to_instant: bool = False
    queue: WithdrawalQueue = Field(default_factory=WithdrawalQueue)
    panic_signals: int = 0

    @property
    def exited(self) -> bool:
        return self.withdrew


class WholesaleAccount(BaseModel):
    role: Literal["wholesale"] = "wholesale"
    facility: str | None = None
    commitment: Commitment = Field(default_factory=Commitment)
    spread_bps_override: int = 0
    exposure_pct: float = 100.0
    refused: bool = False
    refused_at_phase: Phase | None = None
    held_through_resolution: bool = False

    @property
    def exited(self) -> bool:
        return self.refused


Account = Annotated[Union[DepositorAccount, WholesaleAccount], Field(discriminator="role")]


class ActionRecord(BaseModel):
    """One accepted action, kept for reporting."""
    type: str
    phase: Phase
    at: datetime = Field(default_factory=datetime.now)
    details: dict = Field(default_factory=dict)


class Participant(BaseModel):
    id: str = Field(default_factory=generate_id)
    name: str
    resume_token: str = Field(default_factory=lambda: uuid4().hex[:24])
    joined_at: datetime = Field(default_factory=datetime.now)
    balance: float = 0.0
    principal: float = 0.0
    quiz_score: int = 0
    verified_name: bool = False
    last_action_at: datetime | None = None
    actions: list[ActionRecord] = Field(default_factory=list)  # Most recent first
    account: Account

    @property
    def role(self) -> Role:
        return Role(self.account.role)

    @property
    def is_spectator(self) -> bool:
        """Exited participants may watch but no longer act."""
        return self.account.exited

    def pseudonym(self, prefix: str = "User_") -> str:
        return f"{prefix}{self.id[-4:]}"

    def record(
        self,
        action_type: str,
        phase: Phase,
        at: datetime,
        limit: int = 40,
        **details,
    ) -> ActionRecord:
        entry = ActionRecord(type=action_type, phase=phase, at=at, details=details)
        self.actions.insert(0, entry)
        del self.actions[limit:]
        self.last_action_at = at
        return entry


# -----------------------------------------------------------------------------
# Session state
# -----------------------------------------------------------------------------

class JoinCredential(BaseModel):
    """Rotating join token shown to the room as a QR code."""
    token: str
    expires_at: datetime

    def is_valid(self, token: str, now: datetime) -> bool:
        return bool(token) and token == self.token and now <= self.expires_at


class FeedEvent(BaseModel):
    id: str = Field(default_factory=generate_id)
    type: FeedType = FeedType.INFO
    text: str
    at: datetime = Field(default_factory=datetime.now)


class Session(BaseModel):
    id: str = Field(default_factory=generate_id)
    code: str
    phase: Phase = Phase.LOBBY
    phase_started_at: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)
    bank_status: BankStatus = BankStatus.STABLE
    boe_status: BoeStatus = BoeStatus.PENDING
    active_events: list[str] = Field(default_factory=list)
    event_triggered_at: dict[str, datetime] = Field(default_factory=dict)
    event_feed: list[FeedEvent] = Field(default_factory=list)  # Most recent first
    reveal_names: bool = False
    resolution_pending: bool = False    # Phase-4 sub-stage: awaiting BoE decision
    survival_alert_sent: bool = False
    join: JoinCredential


# -----------------------------------------------------------------------------
# Metrics
# -----------------------------------------------------------------------------

class AssetLiquidity(BaseModel):
    bid_offer_spread_pct: float = 0.12
    market_depth: str = "Deep"
    immediacy: str = "Minutes"
    resilience: str = "Fast"


class ContingencyStages(BaseModel):
    stage1: str = "ACTIVE"
    stage2: str = "READY"
    stage3: str = "STANDBY"


class StressTypes(BaseModel):
    institution_specific: bool = True
    market_wide: bool = False


class Assumptions(BaseModel):
    funding_cost_stable: bool = True
    prepayment_rate_pct: float = 12.0
    deposit_stability: bool = True


class ResolutionOutcome(BaseModel):
    boe_injected: bool = False
    rescue_injection_amount: float = 0.0


_BUCKET_FIELDS: dict[Bucket, str] = {
    Bucket.SHORT: "short",
    Bucket.MEDIUM: "medium",
    Bucket.LONG: "long",
    Bucket.OTHER: "other",
}


class BucketTotals(BaseModel):
    """Money by maturity bucket."""
    short: float = 0.0      # 0-3m
    medium: float = 0.0     # 3-12m
    long: float = 0.0       # 12-36m
    other: float = 0.0      # 36m+

    def get(self, bucket: Bucket) -> float:
        return getattr(self, _BUCKET_FIELDS[bucket])

    def add(self, bucket: Bucket, amount: float) -> None:
        name = _BUCKET_FIELDS[bucket]
        setattr(self, name, getattr(self, name) + amount)

    @property
    def total(self) -> float:
        return self.short + self.medium + self.long + self.other


class Metrics(BaseModel):
    lcr: float = 100.0
    nsfr: float = 100.0
    liquidity_buffer: float = 1_100_000_000.0
    survival_hours: int = 96
    funding_concentration_pct: float = 74.0
    wholesale_dependency_pct: float = 74.0
    contractual_maturity_pct: float = 88.0
    behavioral_maturity_pct: float = 88.0
    scenario: Scenario = Scenario.BASE
    libor_pct: float = 5.25
    panic_meter: float = 4.0
    asset_liquidity: AssetLiquidity = Field(default_factory=AssetLiquidity)
    cfp_stage: ContingencyStages = Field(default_factory=ContingencyStages)
    stress_types: StressTypes = Field(default_factory=StressTypes)
    assumptions: Assumptions = Field(default_factory=Assumptions)
    outcomes: ResolutionOutcome = Field(default_factory=ResolutionOutcome)
    asset_buckets: BucketTotals = Field(default_factory=BucketTotals)
    liability_buckets: BucketTotals = Field(default_factory=BucketTotals)
    wholesale_refusals: int = 0
    depositor_withdrawals: int = 0


class GameState(BaseModel):
    """Complete persisted state of one classroom session."""
    schema_version: int = 1
    session: Session
    metrics: Metrics = Field(default_factory=Metrics)
    participants: dict[str, Participant] = Field(default_factory=dict)
    ticks: int = 0
    last_tick_at: datetime | None = None

    def by_role(self, role: Role) -> list[Participant]:
        return [p for p in self.participants.values() if p.role == role]

    @property
    def depositors(self) -> list[Participant]:
        return self.by_role(Role.DEPOSITOR)

    @property
    def wholesale(self) -> list[Participant]:
        return self.by_role(Role.WHOLESALE)
