import io

from aidd import log
from aidd.markers import MarkerStore
from aidd.transcript import Transcript, log_path, next_log_index


def test_next_log_index(tmp_path):
    assert next_log_index(tmp_path / "missing") == 1
    for name in ("001.log", "012.log", "notes.log", "3.txt"):
        (tmp_path / name).write_text("")
    assert next_log_index(tmp_path) == 13
    assert log_path(tmp_path, 13).name == "013.log"


def test_transcript_echo_and_discard(tmp_path):
    echo = io.StringIO()
    t = Transcript(tmp_path / "iterations" / "001.log", echo=echo)
    t.write_line("hello\n")
    with log.tee(t.handle):
        log.warn("careful")
    t.close()
    assert t.path.read_text() == "hello\n[WARN] careful\n"
    assert echo.getvalue() == "hello\n"
    t.discard()
    assert not t.path.exists()


def test_log_level_threshold(monkeypatch, capsys):
    monkeypatch.setenv("AIDD_LOG_LEVEL", "warn")
    log.info("quiet")
    log.error("loud")
    err = capsys.readouterr().err
    assert "quiet" not in err
    assert "[ERROR] loud" in err


def test_marker_store(metadata_dir):
    markers = MarkerStore(metadata_dir)
    assert not markers.completion_pending
    markers.set_completion_pending()
    assert markers.completion_pending
    assert markers.clear_completion_pending() is True
    assert markers.clear_completion_pending() is False
    markers.request_stop()
    assert markers.stop_requested
    markers.clear_stop()
    assert not markers.stop_requested
