# tests/test_run_local.py
import sys

from backend import run_local
from backend.lib import dynamodb_service
from backend.lib.services import init_alerts, init_store
from backend.lib.settings import Settings
from backend.lib.water_meter_core.store import MemoryStore


def test_parse_command(capsys):
    assert run_local.main(["parse", "MTRID:M1;VOL:2.5;FW:9"]) == 0
    out = capsys.readouterr().out
    assert "Outcome: Parsed" in out
    assert "Meter ID: M1" in out
    assert "Unrecognized keys: FW" in out


def test_usage(capsys):
    assert run_local.main([]) == 2
    assert run_local.main(["bogus"]) == 2
    assert "usage:" in capsys.readouterr().out


def test_check_does_not_build_the_web_app(monkeypatch, capsys):
    monkeypatch.setenv("USE_DYNAMODB", "false")
    monkeypatch.setenv("USE_SNS", "false")
    monkeypatch.delitem(sys.modules, "backend.app", raising=False)

    assert run_local.main(["check"]) == 0
    assert run_local.main(["reconcile"]) == 0

    assert "backend.app" not in sys.modules
    assert '"users_repaired": []' in capsys.readouterr().out


def test_store_falls_back_to_memory(monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("no credentials")

    monkeypatch.setattr(dynamodb_service, "DynamoDBService", broken)

    assert isinstance(init_store(Settings(use_dynamodb=True)), MemoryStore)
    assert isinstance(init_store(Settings()), MemoryStore)
    assert init_alerts(Settings()) is None
