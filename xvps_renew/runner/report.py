"""Terminal report for one renewal attempt."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from xvps_renew.runner.workflow import RenewalAttempt, WorkflowState
from xvps_renew.solver.captcha_solver import Solved

_HEADLINES = {
    WorkflowState.SUCCEEDED: "VPS renewal completed",
    WorkflowState.TOO_EARLY: "VPS renewal not yet available, try again one day before expiry",
    WorkflowState.FAILED: "VPS renewal FAILED",
}


@dataclass
class AttemptReport:
    account_id: str
    state: str
    reason: Optional[str] = None
    captcha_code: Optional[str] = None
    captcha_method: Optional[str] = None
    captcha_confidence: Optional[float] = None
    elapsed_seconds: float = 0.0
    history: list[str] = field(default_factory=list)
    recording: Optional[str] = None
    finished_at: str = ""

    @classmethod
    def from_attempt(cls, attempt: RenewalAttempt) -> "AttemptReport":
        report = cls(
            account_id=attempt.account_id,
            state=attempt.state.value,
            reason=attempt.reason,
            elapsed_seconds=attempt.elapsed_seconds,
            history=[s.value for s in attempt.history],
            recording=str(attempt.recording_path) if attempt.recording_path else None,
            finished_at=time.strftime(
                "%Y-%m-%dT%H:%M:%S%z", time.localtime(attempt.finished_at or time.time()),
            ),
        )
        if isinstance(attempt.last_outcome, Solved):
            report.captcha_code = attempt.last_outcome.code
            report.captcha_method = attempt.last_outcome.method
            report.captcha_confidence = attempt.last_outcome.confidence
        return report

    @property
    def succeeded(self) -> bool:
        return self.state == WorkflowState.SUCCEEDED.value

    def message(self) -> str:
        """One-paragraph text for the webhook."""
        try:
            headline = _HEADLINES[WorkflowState(self.state)]
        except (KeyError, ValueError):
            headline = f"VPS renewal stopped in state {self.state}"
        lines = [f"{headline} (VPS {self.account_id}, {self.elapsed_seconds:.0f}s)"]
        if self.captcha_code:
            lines.append(
                f"Captcha: {self.captcha_code} via {self.captcha_method} "
                f"(confidence {self.captcha_confidence:.1f})"
            )
        if self.reason and self.state != WorkflowState.SUCCEEDED.value:
            lines.append(f"Reason: {self.reason}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "state": self.state,
            "reason": self.reason,
            "captcha": {
                "code": self.captcha_code,
                "method": self.captcha_method,
                "confidence": self.captcha_confidence,
            },
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "history": self.history,
            "recording": self.recording,
            "finished_at": self.finished_at,
        }

    def save(self, path: str | Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    def print_summary(self):
        d = self.to_dict()
        print(f"\n{'='*50}")
        print("Renewal Summary")
        print(f"{'='*50}")
        for k, v in d.items():
            print(f"  {k}: {v}")
        print(f"{'='*50}")
