"""Failure taxonomy surfaced by the page-facing layer.

``infra`` marks failures that require tearing down the browser session
rather than just failing the task.
"""
from __future__ import annotations

from typing import Optional


class CompletionError(RuntimeError):
    code = "COMPLETION_ERROR"
    infra = False

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail
        super().__init__(f"{self.code}: {detail}" if detail else self.code)


class LimitReachedError(CompletionError):
    code = "LIMIT_REACHED"


class CaptchaDetectedError(CompletionError):
    code = "CAPTCHA_DETECTED"


class LoginRequiredError(CompletionError):
    code = "LOGIN_REQUIRED"


class TargetClosedError(CompletionError):
    code = "TARGET_CLOSED"
    infra = True


class StallDetectedError(CompletionError):
    def __init__(self, diagnosis: str, detail: Optional[str] = None) -> None:
        self.diagnosis = diagnosis
        self.code = f"STALL_DETECTED:{diagnosis}"
        # A frozen tab needs a fresh browser, not just a new attempt
        self.infra = diagnosis == "BROWSER_FROZEN"
        super().__init__(detail)


class PromptDeliveryError(RuntimeError):
    pass


class UnknownTargetError(RuntimeError):
    pass
