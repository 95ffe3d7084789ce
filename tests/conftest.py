import pytest

from messages import VariableMeta


@pytest.fixture
def numeric_meta():
    def _make(**kwargs):
        kwargs.setdefault("name", "score")
        kwargs.setdefault("type", "NUMERIC")
        return VariableMeta(**kwargs)
    return _make


@pytest.fixture
def in_process_worker(monkeypatch):
    import worker
    monkeypatch.setattr(worker, "TABULATION_WORKERS", 0)
    return worker
