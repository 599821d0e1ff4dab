import pytest

from fixtures.builders import FakeCompletionService, build_engine


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in (
        "OPSCREW_CONFIG",
        "OPSCREW_DATABASE_URL",
        "DATABASE_URL",
        "OPSCREW_TRANSPORT",
        "OPSCREW_MODEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPSCREW_CONFIG", str(tmp_path / "missing-config.yaml"))


@pytest.fixture
def completion():
    return FakeCompletionService()


@pytest.fixture
def engine(completion):
    return build_engine(completion)
