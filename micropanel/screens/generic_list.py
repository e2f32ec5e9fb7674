import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..config import LINE_H, MENU_SEPARATOR, MENU_START_Y, TEXT_COLS
from ..engine import Action, Result, ScreenModule, ScrollWindow, fit
from ..process import ExternalProcess, run_capture

logger = logging.getLogger(__name__)

# =====================================================
# CONFIG
# =====================================================
DEFAULT_TIMEOUT = 300
STATIC_TITLES = ("Back", "Stop-Playback")
LAUNCH_PREFIX = "launch_module:"

SUCCESS_MARKERS = ("[SUCCESS]", "Flash verification successful", "Optionbyte verification successful")
FAILURE_MARKERS = ("[ERROR]", "Error", "Failed", "failed")

_PCT_RE = re.compile(r"([0-9.]+)%")


class JobState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class ListItem:
    title: str
    action: str = ""
    is_async: bool = False
    timeout: int = DEFAULT_TIMEOUT
    log_file: str = ""
    progress_title: str = ""
    parse_progress: bool = False
    current: bool = False

    @classmethod
    def from_config(cls, raw: Dict[str, Any]) -> "ListItem":
        timeout = raw.get("timeout", DEFAULT_TIMEOUT)
        if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
            timeout = DEFAULT_TIMEOUT
        return cls(
            title=str(raw.get("title", "")),
            action=str(raw.get("action", "")),
            is_async=raw.get("async") is True,
            timeout=timeout,
            log_file=str(raw.get("log_file", "")),
            progress_title=str(raw.get("progress_title", "")),
            parse_progress=raw.get("parse_progress") is True,
        )

    @property
    def is_back(self) -> bool:
        return self.title.lower() == "back"


# =====================================================
# JOB HELPERS
# =====================================================
def format_elapsed(seconds: float) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def parse_progress(log_path: str) -> int:
    """Last 'NN.N%' figure in the log, or -1."""
    if not log_path:
        return -1
    try:
        with open(log_path, "r", errors="replace") as f:
            text = f.read()
    except OSError:
        return -1
    pct = -1
    for m in _PCT_RE.finditer(text):
        try:
            pct = int(float(m.group(1)))
        except ValueError:
            continue
    return pct


def job_succeeded(log_path: str) -> bool:
    """
    Decide the outcome of a finished async action from its log.

    - no log configured: success
    - log unreadable: failure
    - otherwise a success marker must be present and no failure marker
    """
    if not log_path:
        return True
    try:
        with open(log_path, "r", errors="replace") as f:
            text = f.read()
    except OSError as e:
        logger.warning(f"Cannot read job log {log_path}: {e}")
        return False
    ok = any(m in text for m in SUCCESS_MARKERS)
    bad = any(m in text for m in FAILURE_MARKERS)
    return ok and not bad


# =====================================================
# SCREEN
# =====================================================
class GenericList(ScreenModule):
    """
    A config-driven list of actions. Items may run shell commands
    synchronously, run them as background jobs with a progress screen and
    timeout, or ask the launching menu for another module.
    """

    def __init__(self, ctx, module_id: str, config: Dict[str, Any]):
        super().__init__(ctx)
        self.id = module_id
        self.title = str(config.get("title", module_id))
        self.config_items = [ListItem.from_config(i) for i in config.get("list_items") or []
                             if isinstance(i, dict)]
        self.selection_script = str(config.get("list_selection", "") or "")
        self.items_source = str(config.get("items_source", "") or "")
        self.items_path = str(config.get("items_path", "") or "")
        self.items_action = str(config.get("items_action", "") or "")
        self.prepend_static = config.get("prepend_static_items") is True
        self.notify_on_exit = config.get("notify_on_exit") is True
        self.callback_action = str(config.get("callback_action", "") or "")

        self.items: List[ListItem] = list(self.config_items)
        self.window = ScrollWindow()
        self.selected_value = ""

        self.job = ExternalProcess(f"list:{module_id}")
        self.job_state = JobState.IDLE
        self.job_item: Optional[ListItem] = None
        self.result_message = ""
        self.last_pct = -1
        self.last_time = ""
        self.waiting_for_ack = False

    @property
    def state_mode(self) -> bool:
        return bool(self.selection_script)

    # ---------- items ----------
    def load_dynamic_items(self) -> None:
        if not self.items_source:
            return
        cmd = self.items_source
        if self.items_path:
            cmd += " " + self.items_path
        output = run_capture(cmd)

        static = [i for i in self.config_items if i.title in STATIC_TITLES]
        dynamic = [ListItem(title=line, action=self.items_action)
                   for line in output.splitlines() if line.strip()]
        self.items = static + dynamic if self.prepend_static else dynamic + static
        logger.debug(f"{self.id}: loaded {len(dynamic)} dynamic items")

    def refresh_state(self) -> None:
        if not self.state_mode:
            return
        current = run_capture(self.selection_script)
        if current.endswith("\n"):
            current = current[:-1]
        found = False
        for item in self.items:
            item.current = not found and item.title == current
            found = found or item.current

    # ---------- lifecycle ----------
    def enter(self) -> None:
        logger.debug(f"Entering GenericList: {self.id}")
        if self.items_source:
            self.load_dynamic_items()
        self.window.reset(len(self.items))
        self.redraw()

    def exit(self) -> None:
        if self.job.running:
            logger.info(f"{self.id}: leaving with job running, terminating")
            self.job.terminate()
        self.job_state = JobState.IDLE
        self.waiting_for_ack = False

    def redraw(self) -> None:
        if self.job_state is JobState.RUNNING:
            self.last_pct = -1
            self.last_time = ""
            self._render_progress()
            return
        if self.waiting_for_ack:
            self._render_result()
            return
        self.display.clear()
        self.render_list()

    def _row_text(self, index: int) -> str:
        item = self.items[index]
        selected = index == self.window.selected
        if item.current:
            text = (">[" if selected else " [") + item.title + "]"
        else:
            text = ("> " if selected else "  ") + item.title
        return fit(text)

    def render_list(self) -> None:
        self.display.draw_text(0, 0, fit(""))
        self.display.draw_text(0, 0, self.title[:TEXT_COLS])
        self.display.draw_text(0, LINE_H, MENU_SEPARATOR)
        self.refresh_state()
        rows = self.window.visible_range()
        for index in rows:
            self.display.draw_text(0, self.window.row_y(index), self._row_text(index))
        for row in range(len(rows), self.window.visible):
            self.display.draw_text(0, MENU_START_Y + row * LINE_H, fit(""))

    # ---------- input ----------
    def on_rotate(self, steps: int) -> Result:
        if self.waiting_for_ack:
            return self._dismiss()
        if self.job_state is JobState.RUNNING:
            return Action.CONTINUE
        if self.window.move(steps):
            self.render_list()
        return Action.CONTINUE

    def on_button(self) -> Result:
        if self.waiting_for_ack:
            return self._dismiss()
        if self.job_state is JobState.RUNNING:
            return Action.CONTINUE
        if not self.items:
            return Action.CONTINUE

        item = self.items[self.window.selected]
        if item.is_back:
            if self.notify_on_exit and self.callback_action:
                res = self._notify(self.callback_action, self.selected_value)
                if res is Action.POP_TO_ROOT:
                    return res
            return Action.POP
        if item.is_async:
            self.start_job(item)
            return Action.CONTINUE
        if not item.action:
            return Action.CONTINUE

        res = self.execute(item)
        if res is None and self.callback_action and not self.notify_on_exit:
            res = self._notify(self.callback_action, self.selected_value)
        if res is None or res is Action.CONTINUE:
            self.render_list()
        return res

    def _dismiss(self) -> Result:
        logger.debug(f"{self.id}: job result dismissed")
        self.waiting_for_ack = False
        self.job_state = JobState.IDLE
        self.enter()
        return Action.CONTINUE

    def _notify(self, action: str, value: str) -> Result:
        if self.callback is None:
            logger.warning(f"{self.id}: no callback set for {action}")
            return None
        return self.callback.on_screen_action(self.id, action, value)

    def execute(self, item: ListItem) -> Result:
        action = item.action.replace("$1", item.title, 1)
        self.selected_value = item.title
        if action.startswith(LAUNCH_PREFIX):
            module_type = action[len(LAUNCH_PREFIX):]
            logger.debug(f"{self.id}: launching {module_type} with {item.title}")
            return self._notify("launch_module", f"{module_type}:{item.title}")
        run_capture(action, timeout=60.0)
        logger.debug(f"{self.id}: executed action: {action}")
        return None

    # ---------- async jobs ----------
    def start_job(self, item: ListItem) -> None:
        action = item.action.replace("$1", item.title, 1)
        if item.log_file:
            # truncate before the child appends to it
            try:
                open(item.log_file, "w").close()
            except OSError as e:
                logger.warning(f"Cannot truncate {item.log_file}: {e}")
        logger.info(f"{self.id}: starting async action '{item.title}' (timeout {item.timeout}s)")
        self.selected_value = item.title
        self.job_item = item
        self.last_pct = -1
        self.last_time = ""
        if not self.job.start(action, log_path=item.log_file or None, append=True):
            self._finish(JobState.FAILED, "Update failed!")
            return
        self.job_state = JobState.RUNNING
        self._render_progress()

    def update(self) -> Result:
        if self.job_state is not JobState.RUNNING:
            return Action.CONTINUE
        item = self.job_item
        rc = self.job.poll()
        if rc is not None:
            if job_succeeded(item.log_file):
                self._finish(JobState.COMPLETED, "")
            else:
                logger.warning(f"{self.id}: async action '{item.title}' failed (rc={rc})")
                self._finish(JobState.FAILED, "Update failed!")
            return Action.CONTINUE
        if self.job.elapsed() >= item.timeout:
            logger.warning(f"{self.id}: async action '{item.title}' timed out after {item.timeout}s")
            self.job.terminate(grace=1.0)
            self._finish(JobState.TIMEOUT, "Action timed-out\nUpdate failed!")
            return Action.CONTINUE
        self._render_progress()
        return Action.CONTINUE

    def progress_pct(self) -> int:
        item = self.job_item
        if item.parse_progress:
            pct = parse_progress(item.log_file)
            if pct >= 0:
                return min(100, pct)
        return min(99, int(self.job.elapsed() * 100 / item.timeout))

    def _render_progress(self) -> None:
        pct = self.progress_pct()
        elapsed = format_elapsed(self.job.elapsed())
        if pct == self.last_pct and elapsed == self.last_time:
            return
        if self.last_pct < 0:
            self.display.clear()
            self.display.draw_text(0, 0, (self.job_item.progress_title or self.job_item.title)[:TEXT_COLS])
        else:
            self.display.draw_text(0, 16, fit(""))
        self.display.draw_text(0, 16, f"{pct}% - {elapsed}")
        self.last_pct = pct
        self.last_time = elapsed

    def _finish(self, state: JobState, message: str) -> None:
        self.job_state = state
        self.result_message = message
        self.waiting_for_ack = True
        self._render_result()

    def _render_result(self) -> None:
        self.display.clear()
        if self.job_state is JobState.COMPLETED:
            self.display.draw_text(0, 0, "Update")
            self.display.draw_text(0, 8, "Success!")
            self.display.draw_text(0, 24, "Press any button")
        else:
            for i, line in enumerate(self.result_message.split("\n")[:2]):
                self.display.draw_text(0, i * LINE_H, line[:TEXT_COLS])
            self.display.draw_text(0, 24, "Press button")
        self.display.draw_text(0, 32, "to continue")
