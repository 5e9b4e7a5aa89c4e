from __future__ import annotations

import io
import logging
from datetime import datetime
from pathlib import Path

from hostdeploy.run_log import STEP_COLOR, close_run_log, configure_run_log


def test_log_file_is_timestamped_and_mirrors_console(tmp_path: Path):
    console = io.StringIO()
    path = configure_run_log(tmp_path, now=datetime(2024, 5, 1, 9, 30, 0), console_stream=console, use_color=False)
    log = logging.getLogger("hostdeploy.deploy")
    try:
        log.debug("remote output detail")
        log.info("Cloning repository...")
        log.warning("Nginx proxy test failed")
        log.error("Step 6 failed")
    finally:
        close_run_log()

    assert path == tmp_path / "deploy_20240501_093000.log"
    text = path.read_text(encoding="utf-8")
    assert "DEBUG remote output detail" in text
    assert "ERROR Step 6 failed" in text

    shown = console.getvalue()
    assert "remote output detail" not in shown
    assert "[WARNING] Nginx proxy test failed" in shown
    assert "[ERROR] Step 6 failed" in shown


def test_step_lines_are_highlighted_on_a_color_console(tmp_path: Path):
    console = io.StringIO()
    configure_run_log(tmp_path, console_stream=console, use_color=True)
    try:
        logging.getLogger("hostdeploy.deploy").info("Step 1: Cloning repository", extra={"step": True})
    finally:
        close_run_log()
    assert console.getvalue().startswith(STEP_COLOR)


def test_reconfiguring_replaces_previous_handlers(tmp_path: Path):
    configure_run_log(tmp_path / "a", console_stream=io.StringIO())
    configure_run_log(tmp_path / "b", console_stream=io.StringIO())
    try:
        assert len(logging.getLogger("hostdeploy").handlers) == 2
    finally:
        close_run_log()
    assert logging.getLogger("hostdeploy").handlers == []
