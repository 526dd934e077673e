import os
from collections.abc import Generator
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from finance_tracker.core import configuration, settings
from finance_tracker.integration.transaction_api import HttpTransactionService
from finance_tracker.main import app
from finance_tracker.services.reconciliation import ReconciliationCoordinator
from finance_tracker.services.state import ReconciliationState


@pytest.fixture(autouse=True)
def restore_environment() -> Generator[None, None, None]:
    saved = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(saved)


@pytest.fixture
def config_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "config" / "config.yaml"
    monkeypatch.setattr(settings, "get_config_path", lambda: str(path))
    monkeypatch.setattr(settings, "is_env_override", lambda name: False)
    return path


def test_apply_config_updates_writes_file_and_environment(config_path: Path) -> None:
    errors, updates = configuration.apply_config_updates(
        {
            "RENDERER_TIMEOUT_SECONDS": "45",
            "FAILURE_POLICY": "DISCARD",
            "OPENAI_MODEL": "local: small",
            "UNKNOWN_KEY": "ignored",
        }
    )

    assert errors == {}
    assert updates == {
        "FAILURE_POLICY": "discard",
        "OPENAI_MODEL": "local: small",
        "RENDERER_TIMEOUT_SECONDS": "45.0",
    }
    assert os.environ["FAILURE_POLICY"] == "discard"
    written = settings.read_config_file(str(config_path))
    assert written["OPENAI_MODEL"] == "local: small"
    assert written["RENDERER_TIMEOUT_SECONDS"] == "45.0"
    assert "UNKNOWN_KEY" not in written
    assert config_path.read_text(encoding="utf-8").startswith("# Finance Tracker configuration")


def test_invalid_values_write_nothing(config_path: Path) -> None:
    errors, updates = configuration.apply_config_updates(
        {"CREATE_TIMEOUT_SECONDS": "0", "FAILURE_POLICY": "sometimes", "TESSERACT_LANG": "eng"}
    )

    assert set(errors) == {"CREATE_TIMEOUT_SECONDS", "FAILURE_POLICY"}
    assert updates == {}
    assert not config_path.exists()


def test_blank_value_comments_out_key(config_path: Path) -> None:
    config_path.parent.mkdir(parents=True)
    config_path.write_text("TESSERACT_LANG: hin\n", encoding="utf-8")
    os.environ["TESSERACT_LANG"] = "hin"

    errors, updates = configuration.apply_config_updates({"TESSERACT_LANG": "  "})

    assert errors == {}
    assert updates == {"TESSERACT_LANG": ""}
    assert config_path.read_text(encoding="utf-8") == "# TESSERACT_LANG:\n"
    assert "TESSERACT_LANG" not in os.environ


def test_environment_overrides_are_left_alone(config_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "is_env_override", lambda name: name == "TRANSACTION_API_URL")

    errors, updates = configuration.apply_config_updates(
        {"TRANSACTION_API_URL": "http://elsewhere", "TESSERACT_LANG": "deu"}
    )

    assert errors == {}
    assert updates == {"TESSERACT_LANG": "deu"}


def test_context_hides_secrets(config_path: Path) -> None:
    config_path.parent.mkdir(parents=True)
    config_path.write_text("TRANSACTION_API_TOKEN: very-secret\nTESSERACT_LANG: eng\n", encoding="utf-8")

    context = configuration.build_config_context()
    fields = {field["key"]: field for field in context["fields"]}

    assert context["config_path"] == str(config_path)
    assert fields["TRANSACTION_API_TOKEN"]["value"] == ""
    assert fields["TRANSACTION_API_TOKEN"]["is_set"] is True
    assert fields["TESSERACT_LANG"]["value"] == "eng"
    assert fields["FAILURE_POLICY"]["options"] == ["retain_once", "discard"]


def test_runtime_updates_reach_live_components(monkeypatch: pytest.MonkeyPatch) -> None:
    coordinator = ReconciliationCoordinator(
        ReconciliationState(), AsyncMock(), timeout=30, stale_ttl=120, failure_policy="retain_once"
    )
    service = HttpTransactionService(base_url="http://old.test", token="old")
    target = SimpleNamespace(state=SimpleNamespace(coordinator=coordinator, service=service))

    monkeypatch.setenv("CREATE_TIMEOUT_SECONDS", "7")
    monkeypatch.setenv("FAILURE_POLICY", "discard")
    monkeypatch.setenv("TRANSACTION_API_URL", "http://new.test")
    monkeypatch.setenv("TRANSACTION_API_TOKEN", "new")
    configuration.apply_runtime_updates(
        target,
        {"CREATE_TIMEOUT_SECONDS": "7", "FAILURE_POLICY": "discard", "TRANSACTION_API_URL": "http://new.test"},
    )

    assert coordinator.timeout == 7.0
    assert coordinator.failure_policy == "discard"
    assert service.base_url == "http://new.test"
    assert service.headers["Authorization"] == "Bearer new"


def test_config_routes(config_path: Path) -> None:
    client = TestClient(app)

    listed = client.get("/api/config")
    assert listed.status_code == 200
    assert any(field["key"] == "CREATE_TIMEOUT_SECONDS" for field in listed.json()["fields"])

    rejected = client.post("/api/config", json={"CREATE_TIMEOUT_SECONDS": "soon"})
    assert rejected.status_code == 422
    assert "CREATE_TIMEOUT_SECONDS" in rejected.json()["detail"]["errors"]

    saved = client.post("/api/config", json={"OPTIMISTIC_STALE_TTL_SECONDS": "300"})
    assert saved.status_code == 200
    assert saved.json() == {"status": "saved", "updated": ["OPTIMISTIC_STALE_TTL_SECONDS"]}
    assert os.environ["OPTIMISTIC_STALE_TTL_SECONDS"] == "300.0"
