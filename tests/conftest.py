import hashlib
import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import chronicle`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from chronicle.accounts import Account  # noqa: E402
from chronicle.capabilities import InMemoryTokenLedger  # noqa: E402
from chronicle.config import get_config_manager  # noqa: E402
from chronicle.host import ExecutionHost, ManualClock  # noqa: E402
from chronicle.registry import StreamRegistry  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "perf: performance/benchmark tests (skipped unless CHRONICLE_RUN_PERF=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_perf = _env_flag('CHRONICLE_RUN_PERF')

    for item in items:
        if 'perf' in item.keywords and not run_perf:
            item.add_marker(pytest.mark.skip(reason='perf tests skipped; set CHRONICLE_RUN_PERF=1 to enable'))


def _h(label: str) -> str:
    return hashlib.sha256(label.encode("utf-8")).hexdigest()


def _account(n: int) -> str:
    return Account.from_seed(bytes([n]) * 32).address


@pytest.fixture(autouse=True)
def _fresh_config():
    mgr = get_config_manager()
    mgr.reset()
    yield mgr
    mgr.reset()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def host(clock) -> ExecutionHost:
    return ExecutionHost(clock=clock)


@pytest.fixture
def publisher() -> str:
    return _account(1)


@pytest.fixture
def alice() -> str:
    return _account(2)


@pytest.fixture
def bob() -> str:
    return _account(3)


@pytest.fixture
def tokens(publisher, alice, bob) -> InMemoryTokenLedger:
    return InMemoryTokenLedger({publisher: "1000", alice: "100", bob: "5"})


@pytest.fixture
def registry(host, tokens) -> StreamRegistry:
    return StreamRegistry(host, burn=tokens, balance=tokens)


@pytest.fixture
def checkpoint_inputs():
    """Factory for publish keyword arguments."""
    def make(label: str, pointer: str = "") -> dict:
        return {
            "state_commitment": _h(f"{label}/state"),
            "ciphertext_hash": _h(f"{label}/ciphertext"),
            "ciphertext_pointer": pointer or f"ipfs://{label}",
            "manifest_hash": _h(f"{label}/manifest"),
        }
    return make


@pytest.fixture
def h():
    """Deterministic 64-hex digest for a label."""
    return _h


@pytest.fixture
def make_account():
    """Deterministic account address for a small integer seed."""
    return _account
