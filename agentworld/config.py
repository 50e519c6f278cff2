"""World configuration — loaded from environment variables.

Build one `WorldSettings` at process start and hand it to `open_world()`.
Engines receive the values they need through their constructors.
"""

from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from agentworld.types import Tier

_TOKEN = 10 ** 18


def default_tiers() -> list[Tier]:
    return [
        Tier(name="whale", threshold=10_000 * _TOKEN, multiplier=Decimal("3")),
        Tier(name="patron", threshold=5_000 * _TOKEN, multiplier=Decimal("2")),
        Tier(name="member", threshold=1_000 * _TOKEN, multiplier=Decimal("1.5")),
        Tier(name="holder", threshold=0, multiplier=Decimal("1")),
    ]


def default_rewards() -> dict[str, Decimal]:
    return {
        "mint_passport": Decimal("10"),
        "buy_music": Decimal("5"),
        "buy_art": Decimal("5"),
        "radio_queue_song": Decimal("2"),
        "dao_vote_proposal": Decimal("3"),
        "tip_artist": Decimal("1"),
        "lottery_win": Decimal("100"),
        "first_action": Decimal("5"),
        "daily_login": Decimal("1"),
    }


class WorldSettings(BaseSettings):
    # Storage
    store_backend: str = "sqlite"  # "sqlite" | "redis"
    db_path: Path = Path(".agentworld/world.db")
    redis_url: str = "redis://localhost:6379/0"
    audit_db_path: Path = Path(".agentworld/audit.db")
    log_level: str = "INFO"

    # Rate limiting: actions fail closed, observation reads fail open
    action_window_seconds: int = 60
    action_max_requests: int = 30
    read_window_seconds: int = 60
    read_max_requests: int = 120

    # Idempotency markers live as long as the longest plausible retry window
    idempotency_ttl_seconds: int = 7 * 24 * 3600
    max_events: int = 100

    # Governance
    proposal_duration_seconds: int = 7 * 24 * 3600
    min_proposer_multiplier: Decimal = Decimal("1.5")
    governance_tiers: list[Tier] = Field(default_factory=default_tiers)

    # Lottery
    ticket_price: Decimal = Decimal("2")
    round_duration_seconds: int = 24 * 3600
    min_entries: int = 5
    min_entries_basis: str = "participants"  # "participants" | "tickets"
    payout_percent: Decimal = Decimal("90")
    winner_bonus_low: int = 50
    winner_bonus_high: int = 150
    trigger_reward_low: int = 1
    trigger_reward_high: int = 10
    draw_claim_timeout_seconds: int = 300

    # Breeding
    breeding_threshold: int = 70

    # Rewards
    reward_amounts: dict[str, Decimal] = Field(default_factory=default_rewards)

    # External collaborators
    receipt_timeout_seconds: float = 60.0
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    notify_webhook_url: str = ""
    anthropic_api_key: str = ""
    default_model: str = "claude-sonnet-4-20250514"

    # Decision clamping
    min_tickets_per_decision: int = 1
    max_tickets_per_decision: int = 10

    model_config = {"env_prefix": "AGENTWORLD_"}
