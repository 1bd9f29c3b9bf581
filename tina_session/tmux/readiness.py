"""
Readiness Detector Module

Polls a session's pane until the agent's interactive prompt shows up.
This only answers "is the process ready for input", not "is the task done".
"""

import logging

from ..core.errors import ClaudeNotReady, ProcessControlError
from ..utils.clock import Clock, SystemClock
from .session_controller import ProcessController

logger = logging.getLogger(__name__)

PROMPT_GLYPHS = ('>', '❯')
READY_MARKER = 'bypass permissions'
POLL_INTERVAL_SECS = 0.5
CAPTURE_LINES = 50


def is_agent_ready(output: str) -> bool:
    """
    Decide whether captured pane output shows a ready prompt.

    Args:
        output: Captured pane text

    Returns:
        bool: True if a line starts with a prompt glyph or any line
        mentions the permission-bypass banner
    """
    for line in output.splitlines():
        if line.strip().startswith(PROMPT_GLYPHS):
            return True
        if READY_MARKER in line:
            return True
    return False


class ReadinessDetector:
    """Waits for an agent prompt inside a tmux session."""

    def __init__(self, controller: ProcessController, clock: Clock = None,
                 poll_interval: float = POLL_INTERVAL_SECS):
        self.controller = controller
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval

    def wait_for_ready(self, session: str, timeout_secs: float) -> None:
        """
        Block until the session shows a ready prompt.

        Capture failures (session not attachable yet) count as "not ready".

        Args:
            session: tmux session name
            timeout_secs: Overall budget

        Raises:
            ClaudeNotReady: if the budget runs out first
        """
        start = self.clock.monotonic()

        while self.clock.monotonic() - start < timeout_secs:
            try:
                output = self.controller.capture(session, CAPTURE_LINES)
            except ProcessControlError as e:
                logger.debug(f"Capture of {session} failed while waiting for prompt: {e}")
                output = ''

            if is_agent_ready(output):
                logger.info(f"Agent ready in {session}")
                return

            self.clock.sleep(self.poll_interval)

        raise ClaudeNotReady(timeout_secs)
