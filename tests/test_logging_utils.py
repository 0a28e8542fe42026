import logging

from dune_sync.core.logging_utils import MaskSecretsFilter, get_logger, setup_logging


def _flush():
    for h in logging.getLogger().handlers:
        h.flush()


def test_setup_creates_action_file_and_redacts(tmp_path, monkeypatch):
    monkeypatch.setenv("DUNE_SYNC_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DUNE_SYNC_LOG_FILE_LEVEL", "DEBUG")
    setup_logging("INFO", action="apply")

    log = get_logger("dune_sync.test")
    log.info("headers X-Dune-API-Key: sk_live_123 sent")
    log.debug("retry with %s", "api_key=abc987")
    log.warning("Authorization: Bearer tok555")
    _flush()

    files = list((tmp_path / "logs").glob("apply-*.log"))
    assert len(files) == 1
    content = files[0].read_text(encoding="utf-8")
    assert "***REDACTED***" in content
    assert "sk_live_123" not in content
    assert "abc987" not in content
    assert "tok555" not in content
    assert "DEBUG" in content


def test_setup_is_idempotent(tmp_path, monkeypatch):
    monkeypatch.setenv("DUNE_SYNC_LOG_DIR", str(tmp_path / "logs"))
    setup_logging(action="verify")
    setup_logging(action="verify")
    root = logging.getLogger()
    assert len(root.handlers) == 2
    setup_logging()
    assert len(root.handlers) == 1


def test_mask_filter_handles_dict_args():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "%(h)s", None, None)
    record.args = {"h": "X-Dune-API-Key=secret1"}
    MaskSecretsFilter().filter(record)
    assert "secret1" not in record.getMessage()
