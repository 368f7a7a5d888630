import json
import types

import pytest

from rebalancing import web_server
from rebalancing.config import AuditConfig, EngineConfig
from rebalancing.repository import FileRepository
from services.protocols import PaperExecutionAdapter


def test_build_service_defaults_to_paper_trading(tmp_path):
    config = EngineConfig(state_dir=tmp_path / "state")

    service = web_server.build_service(config, env={})

    assert isinstance(service.repository, FileRepository)
    assert isinstance(service.registry.resolve(None, None), PaperExecutionAdapter)
    assert service.simulator.prices is None


def test_build_service_shares_one_ledger_with_the_repository(tmp_path):
    ledger_path = tmp_path / "state" / "ledger.jsonl"
    config = EngineConfig(state_dir=tmp_path / "state", audit=AuditConfig(log_path=ledger_path))

    service = web_server.build_service(config, env={})

    assert service.ledger is service.repository.ledger
    assert service.ledger.path == ledger_path


def test_exchange_credentials_read_from_environment():
    credentials = web_server._exchange_credentials(
        {"REBALANCER_EXCHANGE_API_KEY": "key", "REBALANCER_EXCHANGE_SECRET": "secret"}
    )

    assert credentials == {"apiKey": "key", "secret": "secret", "password": None}


def test_main_runs_uvicorn_with_configured_app(tmp_path, monkeypatch):
    pytest.importorskip("fastapi")
    config_path = tmp_path / "engine.json"
    config_path.write_text(json.dumps({"state_dir": "state", "debug": 2}), encoding="utf-8")
    monkeypatch.delenv("REBALANCER_STATE_DIR", raising=False)
    calls = []
    fake_uvicorn = types.SimpleNamespace(run=lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(web_server, "_import_uvicorn", lambda: fake_uvicorn)

    web_server.main(["--config", str(config_path), "--port", "9001", "--trigger-interval", "60"])

    assert len(calls) == 1
    app, kwargs = calls[0]
    assert kwargs == {"host": "0.0.0.0", "port": 9001, "log_level": "debug"}
    assert app.state.service.config.state_dir == (tmp_path / "state").resolve()
