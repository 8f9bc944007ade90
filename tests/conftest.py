import pytest


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("APPENDBATCH_ACCESS_TOKEN", "test-token")
    monkeypatch.setenv("APPENDBATCH_RECORDS_URL", "https://stream.test/v1/streams/events/records")
