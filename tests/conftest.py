"""Shared test fixtures — a temporary SQLite world with controllable collaborators."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from agentworld.audit import AuditTrail
from agentworld.breeding import BreedingEligibility
from agentworld.chain import ChainClient, Receipt, Settlement
from agentworld.config import default_rewards, default_tiers
from agentworld.events.bus import EventBus
from agentworld.exceptions import DependencyUnavailableError
from agentworld.gateway import ActionGateway
from agentworld.governance.engine import GovernanceEngine
from agentworld.governance.tiers import StaticTierLookup
from agentworld.ledger import RewardLedger
from agentworld.llm.base import BaseLLMProvider, LLMResponse
from agentworld.lottery.engine import LotteryEngine
from agentworld.lottery.randomness import DrawProof, RandomnessOracle
from agentworld.ratelimit import RateLimitConfig, RateLimiter
from agentworld.registry import AgentRegistry
from agentworld.store.sqlite import SQLiteStore

TOKEN = 10 ** 18

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40
DAVE = "0x" + "d" * 40
ERIN = "0x" + "e" * 40


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChain(ChainClient):
    """Records transfers. Receipts succeed unless told otherwise."""

    def __init__(self) -> None:
        self.submitted: list[tuple[str, Decimal, str | None]] = []
        self.failed: set[str] = set()
        self.hanging: set[str] = set()
        self.unavailable = False
        self.hang_submissions = False
        self.fail_next = False
        self.flaky = 0

    async def submit_transfer(self, to, amount, reference=None) -> str:
        if self.unavailable:
            raise DependencyUnavailableError("rpc down")
        if self.flaky > 0:
            self.flaky -= 1
            raise DependencyUnavailableError("rpc blip")
        if self.hang_submissions:
            await asyncio.Event().wait()
        tx_hash = f"0x{len(self.submitted) + 1:064x}"
        self.submitted.append((to, amount, reference))
        if self.fail_next:
            self.failed.add(tx_hash)
            self.fail_next = False
        return tx_hash

    async def await_receipt(self, tx_hash: str) -> Receipt:
        if tx_hash in self.hanging:
            await asyncio.Event().wait()
        return Receipt(tx_hash=tx_hash, success=tx_hash not in self.failed, block_ref="0x1")


class FixedOracle(RandomnessOracle):
    """Deterministic oracle: draws `index`, ranges return `pick` (clamped)."""

    def __init__(self, index: int = 0, pick: int | None = None) -> None:
        self.index = index
        self.pick = pick
        self.draws: list[tuple[int, str]] = []

    async def random_in_range(self, low: int, high: int) -> int:
        if self.pick is None:
            return low
        return max(low, min(high, self.pick))

    async def draw_with_proof(self, upper: int, context: str) -> DrawProof:
        self.draws.append((upper, context))
        return DrawProof(value=self.index % upper, seed="ab" * 32, proof="cd" * 32)


class MockLLMProvider(BaseLLMProvider):
    """LLM provider that returns canned responses. No API calls."""

    def __init__(self, responses: list[LLMResponse] | None = None, error: Exception | None = None):
        self._responses = responses or []
        self._error = error
        self._call_count = 0
        self.calls: list[dict] = []

    async def complete(self, messages, system=None, max_tokens=1024):
        self.calls.append({"messages": messages, "system": system, "max_tokens": max_tokens})
        if self._error is not None:
            raise self._error
        if self._call_count < len(self._responses):
            resp = self._responses[self._call_count]
            self._call_count += 1
            return resp
        return LLMResponse(content='{"action": "skip"}', stop_reason="end_turn")


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    s = SQLiteStore(tmp_path / "world.db", clock=clock)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def bus(store):
    return EventBus(store=store)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def settlement(store, chain):
    return Settlement(store, chain, receipt_timeout=0.2)


@pytest.fixture
def ledger(store, bus, settlement, clock):
    return RewardLedger(store, bus, settlement=settlement, reward_amounts=default_rewards(), clock=clock)


@pytest.fixture
def registry(store, bus, ledger, clock):
    return AgentRegistry(store, bus, ledger=ledger, clock=clock)


@pytest.fixture
def tiers():
    return StaticTierLookup(
        {ALICE: 5_000 * TOKEN, BOB: 0, CAROL: 10_000 * TOKEN, DAVE: 1_000 * TOKEN},
        default_tiers(),
    )


@pytest.fixture
def governance(store, bus, tiers, clock):
    return GovernanceEngine(store, bus, tiers, clock=clock)


@pytest.fixture
def oracle():
    return FixedOracle()


@pytest.fixture
def lottery(store, bus, oracle, clock):
    return LotteryEngine(store, bus, oracle, clock=clock)


@pytest.fixture
def breeding(store, bus, clock):
    return BreedingEligibility(store, bus, threshold=70, clock=clock)


@pytest_asyncio.fixture
async def audit(tmp_path):
    trail = AuditTrail(tmp_path / "audit.db")
    await trail.initialize()
    yield trail
    await trail.close()


@pytest.fixture
def gateway(store, registry, ledger, governance, lottery, breeding, oracle, settlement, audit):
    return ActionGateway(
        registry=registry,
        ledger=ledger,
        governance=governance,
        lottery=lottery,
        breeding=breeding,
        rate_limiter=RateLimiter(store),
        action_limit=RateLimitConfig(prefix="action", window_seconds=60, max_requests=30),
        oracle=oracle,
        settlement=settlement,
        audit=audit,
        retry_attempts=2,
        retry_base_delay=0.0,
        sleep=_no_sleep,
    )


@pytest.fixture
def mock_llm():
    return MockLLMProvider()


@pytest.fixture
def mock_llm_with_responses():
    def _factory(responses: list[LLMResponse]) -> MockLLMProvider:
        return MockLLMProvider(responses=responses)
    return _factory
