import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path

import orjson
import pytest

from imsg_bridge import main as cli

SRC = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def restore_log_stream():
    yield
    # main() points logging at the captured stderr, which pytest closes after the test
    logging.basicConfig(stream=sys.__stderr__, force=True)


def test_help_lists_methods(clean_env, capsys):
    assert cli.main(["--help"]) == 0
    out = capsys.readouterr().out
    assert "imsg-bridge rpc [--db <path>]" in out
    assert "send, chats.list, watch.subscribe, watch.unsubscribe" in out


def test_no_arguments_prints_help(clean_env, capsys):
    assert cli.main([]) == 0
    assert "RPC methods" in capsys.readouterr().out


def test_rpc_help(clean_env, capsys):
    assert cli.main(["rpc", "--db", "/tmp/x.db", "-h"]) == 0
    assert "--db" in capsys.readouterr().out


def test_unknown_command_exits_nonzero(clean_env, capsys):
    assert cli.main(["serve"]) == 1
    assert capsys.readouterr().out == ""


def test_db_aliases_and_home_expansion(clean_env, tmp_path):
    clean_env.setenv("HOME", str(tmp_path))
    parser = cli.build_rpc_parser()
    assert parser.parse_known_args(["--db", "/a.db"])[0].db == "/a.db"
    args, ignored = parser.parse_known_args(["--db-path", "~/chat.db", "--verbose"])
    assert ignored == ["--verbose"]

    settings = cli.apply_overrides(cli.BridgeSettings(), args)
    assert settings.chat_db_path == tmp_path / "chat.db"


def test_overrides_keep_defaults_without_db(clean_env):
    settings = cli.BridgeSettings()
    assert cli.apply_overrides(settings, argparse.Namespace(db=None)) is settings


def test_rpc_stdout_carries_only_protocol_frames(tmp_path):
    env = {key: value for key, value in os.environ.items() if not key.startswith("IMSG_")}
    env.update(
        PYTHONPATH=os.pathsep.join(filter(None, [str(SRC), env.get("PYTHONPATH")])),
        HOME=str(tmp_path),
        IMSG_STATE_DIR=str(tmp_path / "state"),
        IMSG_STAGING_DIR=str(tmp_path / "staging"),
        IMSG_LOG_LEVEL="DEBUG",
    )
    requests = b'not json\n{"jsonrpc":"2.0","id":1,"method":"chats.list"}\n'

    completed = subprocess.run(
        [sys.executable, "-m", "imsg_bridge", "rpc", "--db", str(tmp_path / "chat.db")],
        input=requests,
        capture_output=True,
        env=env,
        timeout=60,
    )

    assert completed.returncode == 0, completed.stderr.decode()
    frames = [orjson.loads(line) for line in completed.stdout.splitlines() if line.strip()]
    assert frames == [{"jsonrpc": "2.0", "id": 1, "result": {"chats": [], "count": 0}}]

    events = [orjson.loads(line)["event"] for line in completed.stderr.splitlines() if line.startswith(b"{")]
    assert "rpc_server_started" in events
    assert "rpc_parse_error" in events
    assert "rpc_server_stopped" in events
