import pytest
from typer.testing import CliRunner

import appendbatch.cli.main as cli_main
from appendbatch.cli.main import app
from appendbatch.exceptions import ServerError
from tests.mocks.transports import FakeTransport

runner = CliRunner()


@pytest.fixture
def fake_transport(monkeypatch) -> FakeTransport:
    transport = FakeTransport()
    monkeypatch.setattr(cli_main, "build_transport", lambda settings: transport)
    return transport


def test_append_from_stdin(fake_transport):
    result = runner.invoke(app, ["append", "--linger-seconds", "0"], input="one\ntwo\n\nthree\n")

    assert result.exit_code == 0, result.output
    assert "Append summary" in result.output
    assert fake_transport.batch_sizes == [3]
    assert [r.body for r in fake_transport.calls[0].records] == [b"one", b"two", b"three"]


def test_append_from_file_with_batching_options(fake_transport, tmp_path):
    path = tmp_path / "records.txt"
    path.write_text("\n".join(f"line-{i}" for i in range(5)), encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "append",
            str(path),
            "--max-batch-records",
            "2",
            "--match-seq-num",
            "0",
            "--fencing-token",
            "writer-1",
        ],
    )

    assert result.exit_code == 0, result.output
    assert fake_transport.batch_sizes == [2, 2, 1]
    assert [call.match_seq_num for call in fake_transport.calls] == [0, 2, 4]
    assert {call.fencing_token for call in fake_transport.calls} == {"writer-1"}


def test_append_reports_failed_batches(monkeypatch, tmp_path):
    transport = FakeTransport(failures={0: ServerError("unavailable", status_code=503)})
    monkeypatch.setattr(cli_main, "build_transport", lambda settings: transport)
    path = tmp_path / "records.txt"
    path.write_text("a\nb\n", encoding="utf-8")

    result = runner.invoke(app, ["append", str(path), "--max-attempts", "1"])

    assert result.exit_code == 1
    assert "ServerError" in result.output


def test_append_rejects_oversized_record(fake_transport):
    result = runner.invoke(
        app, ["append", "--max-batch-bytes", "4"], input="ok\nfar too long\n"
    )

    assert result.exit_code == 2
    assert "Rejected record" in result.output
    assert fake_transport.calls == []


def test_append_rejects_invalid_options(fake_transport):
    result = runner.invoke(app, ["append", "--max-batch-records", "0"], input="a\n")

    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_append_requires_connection_settings(fake_transport, monkeypatch):
    monkeypatch.delenv("APPENDBATCH_RECORDS_URL")
    monkeypatch.setattr("appendbatch.config.load_dotenv", lambda override=False: False)

    result = runner.invoke(app, ["append"], input="a\n")

    assert result.exit_code == 2
    assert "APPENDBATCH_RECORDS_URL" in result.output


def test_append_with_empty_input(fake_transport):
    result = runner.invoke(app, ["append"], input="\n\n")

    assert result.exit_code == 0
    assert "No records to append" in result.output
    assert fake_transport.calls == []


def test_append_merges_explicit_url_with_env_token(monkeypatch):
    captured = {}
    transport = FakeTransport()

    def build_transport(settings):
        captured["settings"] = settings
        return transport

    monkeypatch.setattr(cli_main, "build_transport", build_transport)

    result = runner.invoke(
        app, ["append", "--records-url", "https://other.test/records"], input="a\n"
    )

    assert result.exit_code == 0, result.output
    assert captured["settings"].records_url == "https://other.test/records"
    assert captured["settings"].access_token == "test-token"
    assert transport.batch_sizes == [1]


def test_append_rejects_buffer_smaller_than_batch(fake_transport):
    result = runner.invoke(
        app, ["append", "--max-batch-records", "10", "--buffer-size", "5"], input="a\n"
    )

    assert result.exit_code == 2
    assert "buffer_size" in result.output
