import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from imsg_bridge.config import OutboundStagingPolicy  # noqa: E402

BRIDGE_ENV_VARS = (
    "IMSG_CHAT_DB",
    "IMSG_STATE_DIR",
    "IMSG_OUTBOUND_DIR",
    "IMSG_INBOX_DIR",
    "IMSG_CHECKPOINT_FILE",
    "IMSG_STAGING_DIR",
    "IMSG_ALLOW_ARBITRARY_FILES",
    "IMSG_MAX_ATTACHMENT_BYTES",
    "IMSG_STAGE_TTL_HOURS",
    "IMSG_SERVICE",
    "IMSG_POLL_INTERVAL",
    "IMSG_LOG_LEVEL",
    "IMSG_DEBUG",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in BRIDGE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def outbound_policy(tmp_path) -> OutboundStagingPolicy:
    sandbox = tmp_path / "outbound"
    sandbox.mkdir()
    return OutboundStagingPolicy(sandbox_root=sandbox, staging_dir=tmp_path / "staging")
