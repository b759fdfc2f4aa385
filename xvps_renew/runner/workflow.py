"""Renewal workflow: login, optional TOTP, navigation, captcha, result.

The workflow is one state machine.  Every state change goes through
``next_state`` (a lookup in ``_TRANSITIONS``), so the attempt's state and
history are the whole story of a run.

  Unauthenticated -> LoggingIn -> (TwoFactorPending) -> Authenticated
    -> Navigating -> CaptchaChallenge -> Submitting
    -> Succeeded | TooEarly | Failed

With session reuse, saved cookies may take Unauthenticated straight to
Authenticated.  The captcha step is attempted once per run.

Whatever happens, ``run`` stops and delivers the recording, closes the
browser and sends one report message before the error (if any) propagates.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import pyotp
from bs4 import BeautifulSoup

from xvps_renew.environment.browser_session import BrowserSession
from xvps_renew.environment.cookies import CookieStore
from xvps_renew.settings import ConfigurationError, Credentials, SiteConfig
from xvps_renew.solver.captcha_solver import CaptchaSolver, Failed, SolveOutcome, SolverStrategy
from xvps_renew.solver.image_transforms import ChallengeImage

logger = logging.getLogger(__name__)

UNRECOGNIZED_REASON = "unrecognized result page"


class WorkflowState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOGGING_IN = "logging_in"
    TWO_FACTOR_PENDING = "two_factor_pending"
    AUTHENTICATED = "authenticated"
    NAVIGATING = "navigating"
    CAPTCHA_CHALLENGE = "captcha_challenge"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    TOO_EARLY = "too_early"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    WorkflowState.SUCCEEDED,
    WorkflowState.TOO_EARLY,
    WorkflowState.FAILED,
})


class WorkflowEvent(Enum):
    SESSION_RESTORED = "session_restored"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    LOGGED_IN = "logged_in"
    TOTP_ACCEPTED = "totp_accepted"
    NAVIGATION_STARTED = "navigation_started"
    CHALLENGE_LOADED = "challenge_loaded"
    CAPTCHA_SOLVED = "captcha_solved"
    CAPTCHA_FAILED = "captcha_failed"
    RENEWED = "renewed"
    TOO_EARLY = "too_early"
    UNRECOGNIZED_RESULT = "unrecognized_result"
    ERROR = "error"


_S = WorkflowState
_E = WorkflowEvent

_TRANSITIONS: dict[tuple[WorkflowState, WorkflowEvent], WorkflowState] = {
    (_S.UNAUTHENTICATED, _E.SESSION_RESTORED): _S.AUTHENTICATED,
    (_S.UNAUTHENTICATED, _E.CREDENTIALS_SUBMITTED): _S.LOGGING_IN,
    (_S.LOGGING_IN, _E.TWO_FACTOR_REQUIRED): _S.TWO_FACTOR_PENDING,
    (_S.LOGGING_IN, _E.LOGGED_IN): _S.AUTHENTICATED,
    (_S.TWO_FACTOR_PENDING, _E.TOTP_ACCEPTED): _S.AUTHENTICATED,
    (_S.AUTHENTICATED, _E.NAVIGATION_STARTED): _S.NAVIGATING,
    (_S.NAVIGATING, _E.CHALLENGE_LOADED): _S.CAPTCHA_CHALLENGE,
    (_S.CAPTCHA_CHALLENGE, _E.CAPTCHA_SOLVED): _S.SUBMITTING,
    (_S.CAPTCHA_CHALLENGE, _E.CAPTCHA_FAILED): _S.FAILED,
    (_S.SUBMITTING, _E.RENEWED): _S.SUCCEEDED,
    (_S.SUBMITTING, _E.TOO_EARLY): _S.TOO_EARLY,
    (_S.SUBMITTING, _E.UNRECOGNIZED_RESULT): _S.FAILED,
}
# Any error outside a terminal state ends the attempt.
_TRANSITIONS.update({
    (state, _E.ERROR): _S.FAILED
    for state in WorkflowState
    if state not in TERMINAL_STATES
})


class InvalidTransition(RuntimeError):
    pass


class RenewalError(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LoginRejected(RenewalError):
    pass


class CaptchaUnsolved(RenewalError):
    pass


class RenewalFailed(RenewalError):
    pass


def next_state(state: WorkflowState, event: WorkflowEvent) -> WorkflowState:
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"{event.value} is not valid in state {state.value}") from None


def current_totp(secret: str, for_time: int | float | None = None) -> str:
    """RFC 6238 code (6 digits, SHA1, 30 s step), now or at *for_time*."""
    totp = pyotp.TOTP(secret)
    if for_time is None:
        return totp.now()
    return totp.at(for_time)


def page_text(html: str) -> str:
    return BeautifulSoup(html, "html.parser").get_text()


def classify_result(html: str, completed_phrase: str, too_early_phrase: str) -> WorkflowEvent:
    """Map the post-submit page to RENEWED, TOO_EARLY or UNRECOGNIZED_RESULT."""
    text = page_text(html)
    if completed_phrase in text or completed_phrase in html:
        return WorkflowEvent.RENEWED
    if too_early_phrase in text or too_early_phrase in html:
        return WorkflowEvent.TOO_EARLY
    return WorkflowEvent.UNRECOGNIZED_RESULT


@dataclass(frozen=True)
class Capabilities:
    """Optional behaviour, fixed for the lifetime of one attempt."""
    totp_configured: bool = False
    recording_enabled: bool = False
    reuse_session: bool = False
    solver_strategy: SolverStrategy = SolverStrategy.ENSEMBLE

    @classmethod
    def resolve(
        cls,
        credentials: Credentials,
        config: SiteConfig,
        record: bool = False,
        reuse_session: bool = False,
        strategy: SolverStrategy = SolverStrategy.ENSEMBLE,
    ) -> "Capabilities":
        return cls(
            totp_configured=credentials.has_totp,
            recording_enabled=record and bool(config.browser.video_dir),
            reuse_session=reuse_session,
            solver_strategy=strategy,
        )


@dataclass
class RenewalAttempt:
    """Everything that happened during one run."""
    account_id: str
    username: str
    state: WorkflowState = WorkflowState.UNAUTHENTICATED
    history: list[WorkflowState] = field(default_factory=lambda: [WorkflowState.UNAUTHENTICATED])
    recording_dir: Optional[Path] = None
    recording_path: Optional[Path] = None
    last_outcome: Optional[SolveOutcome] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)
    finished_at: float = 0.0

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at or time.time()
        return end - self.started_at

    def advance(self, event: WorkflowEvent) -> WorkflowState:
        new_state = next_state(self.state, event)
        logger.info("State %s -> %s (%s)", self.state.value, new_state.value, event.value)
        self.state = new_state
        self.history.append(new_state)
        return new_state


class RenewalWorkflow:
    """Drives one browser session through a renewal attempt.

    Collaborators are injected: the solver (and through it the classifier),
    the notifier, a zero-argument ``session_factory`` that launches the
    browser, an optional cookie store and the TOTP provider.
    """

    def __init__(
        self,
        credentials: Credentials,
        config: SiteConfig,
        solver: CaptchaSolver,
        session_factory: Callable[[], BrowserSession],
        notifier=None,
        cookie_store: CookieStore | None = None,
        capabilities: Capabilities | None = None,
        totp_provider: Callable[[str], str] = current_totp,
    ):
        self.credentials = credentials
        self.config = config
        self.solver = solver
        self.session_factory = session_factory
        self.notifier = notifier
        self.cookie_store = cookie_store
        self.capabilities = capabilities or Capabilities(totp_configured=credentials.has_totp)
        self.totp_provider = totp_provider
        self.attempt: RenewalAttempt | None = None

    def _new_attempt(self) -> RenewalAttempt:
        self.attempt = RenewalAttempt(
            account_id=self.credentials.id_vps,
            username=self.credentials.username,
        )
        return self.attempt

    # -- public entry points ---------------------------------------------

    def run(self) -> RenewalAttempt:
        """Run one renewal attempt.

        Returns the attempt for Succeeded / TooEarly.  Every other ending
        raises (after cleanup); ``self.attempt`` still holds the details.
        """
        attempt = self._new_attempt()
        logger.info("Renewing VPS %s as %s (%s)", attempt.account_id, attempt.username,
                    self.capabilities)
        session = None
        try:
            session = self.session_factory()
            if self.capabilities.recording_enabled:
                attempt.recording_dir = session.start_recording(self.config.browser.video_dir)

            self._authenticate(session, attempt)
            image = self._open_challenge(session, attempt)
            self._solve_and_submit(session, attempt, image)
            self._read_result(session, attempt)
        except BaseException as e:
            self._fail(attempt, e)
            raise
        finally:
            self._cleanup(session, attempt, report=True)
        return attempt

    def login_only(self) -> RenewalAttempt:
        """Log in, store the session cookies, release the browser."""
        if self.cookie_store is None:
            raise ConfigurationError("login-only mode needs a cookie store path")
        attempt = self._new_attempt()
        session = None
        try:
            session = self.session_factory()
            self._login(session, attempt)
            self.cookie_store.save(session.cookies())
        except BaseException as e:
            self._fail(attempt, e)
            raise
        finally:
            self._cleanup(session, attempt, report=False)
        return attempt

    # -- steps --------------------------------------------------------------

    def _authenticate(self, session: BrowserSession, attempt: RenewalAttempt):
        if self.capabilities.reuse_session and self._restore_session(session):
            attempt.advance(WorkflowEvent.SESSION_RESTORED)
            return
        self._login(session, attempt)
        self._save_session(session)

    def _restore_session(self, session: BrowserSession) -> bool:
        if self.cookie_store is None or not self.cookie_store.exists():
            return False
        try:
            records = self.cookie_store.load()
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cookie store: %s", e)
            return False
        if not records:
            return False

        session.add_cookies(records)
        index = self.config.urls.panel_index
        session.navigate(index)
        if session.current_url().split("?")[0].rstrip("/") == index.rstrip("/"):
            logger.info("Reusing saved session (%d cookies)", len(records))
            return True
        logger.info("Saved session no longer valid, logging in")
        return False

    def _login(self, session: BrowserSession, attempt: RenewalAttempt):
        urls, sel = self.config.urls, self.config.selectors

        session.navigate(urls.login)
        attempt.advance(WorkflowEvent.CREDENTIALS_SUBMITTED)
        session.fill(sel.username, self.credentials.username)
        session.fill(sel.password, self.credentials.password)
        session.click(sel.login_button)

        # The second-factor page lives under the login URL.
        def left_login_form(url: str) -> bool:
            return urls.two_factor_marker in url or not url.startswith(urls.login)

        if not session.wait_for_url(left_login_form):
            raise LoginRejected("still on the login page after submitting credentials")
        session.wait_for_navigation()

        if urls.two_factor_marker in session.current_url():
            attempt.advance(WorkflowEvent.TWO_FACTOR_REQUIRED)
            if not self.capabilities.totp_configured or not self.credentials.totp_secret:
                raise ConfigurationError(
                    "Second-factor page reached but TOTP_SECRET is not configured"
                )
            session.fill(sel.totp_input, self.totp_provider(self.credentials.totp_secret))
            session.click(sel.totp_submit)
            if not session.wait_for_url(lambda url: not url.startswith(urls.login)):
                raise LoginRejected("second-factor code was not accepted")
            session.wait_for_navigation()
            attempt.advance(WorkflowEvent.TOTP_ACCEPTED)
        else:
            attempt.advance(WorkflowEvent.LOGGED_IN)

    def _save_session(self, session: BrowserSession):
        if self.cookie_store is None:
            return
        try:
            self.cookie_store.save(session.cookies())
        except Exception as e:
            logger.warning("Could not save session cookies: %s", e)

    def _open_challenge(self, session: BrowserSession, attempt: RenewalAttempt) -> ChallengeImage:
        sel = self.config.selectors
        attempt.advance(WorkflowEvent.NAVIGATION_STARTED)
        for selector in (
            sel.server_detail.format(id_vps=self.credentials.id_vps),
            sel.renew_button,
            sel.continue_button,
        ):
            session.click(selector)
            session.wait_for_navigation()

        attempt.advance(WorkflowEvent.CHALLENGE_LOADED)
        image = session.capture_image(sel.captcha_image)
        logger.info("Captured challenge image (%s, %d bytes)", image.mime_type, len(image.data))
        return image

    def _solve_and_submit(
        self, session: BrowserSession, attempt: RenewalAttempt, image: ChallengeImage,
    ):
        sel = self.config.selectors
        outcome = self.solver.solve(image)
        attempt.last_outcome = outcome
        if isinstance(outcome, Failed):
            attempt.reason = f"captcha unsolved: {outcome.reason}"
            attempt.advance(WorkflowEvent.CAPTCHA_FAILED)
            raise CaptchaUnsolved(outcome.reason)

        attempt.advance(WorkflowEvent.CAPTCHA_SOLVED)
        session.fill(sel.captcha_input, outcome.code)
        session.click(sel.captcha_submit)

    def _read_result(self, session: BrowserSession, attempt: RenewalAttempt):
        phrases = self.config.phrases
        session.wait_for_navigation()
        event = classify_result(session.content(), phrases.completed, phrases.too_early)
        attempt.advance(event)
        if event == WorkflowEvent.UNRECOGNIZED_RESULT:
            attempt.reason = UNRECOGNIZED_REASON
            raise RenewalFailed(UNRECOGNIZED_REASON)
        if event == WorkflowEvent.TOO_EARLY:
            attempt.reason = "renewal opens one day before expiry"

    # -- failure & cleanup ---------------------------------------------------

    def _fail(self, attempt: RenewalAttempt, error: BaseException):
        attempt.error = error
        if attempt.reason is None:
            if isinstance(error, KeyboardInterrupt):
                attempt.reason = "interrupted"
            else:
                attempt.reason = getattr(error, "reason", None) or f"{type(error).__name__}: {error}"
        if not attempt.terminal:
            attempt.advance(WorkflowEvent.ERROR)

    def _cleanup(self, session, attempt: RenewalAttempt, report: bool):
        attempt.finished_at = time.time()
        if session is not None:
            if attempt.recording_dir is not None:
                self._deliver_recording(session, attempt)
            try:
                session.close()
            except Exception as e:
                logger.warning("Error releasing browser session: %s", e)

        if report:
            self._send_report(attempt)

    def _deliver_recording(self, session, attempt: RenewalAttempt):
        try:
            attempt.recording_path = session.stop_recording()
        except Exception as e:
            logger.warning("Could not stop recording: %s", e)
            return
        if attempt.recording_path is None or self.notifier is None:
            return
        try:
            self.notifier.send_file(
                attempt.recording_path,
                f"Recording of VPS {attempt.account_id} renewal ({attempt.state.value})",
            )
        except Exception as e:
            logger.warning("Could not deliver recording: %s", e)

    def _send_report(self, attempt: RenewalAttempt):
        from xvps_renew.runner.report import AttemptReport

        if self.notifier is None:
            return
        try:
            self.notifier.send_message(AttemptReport.from_attempt(attempt).message())
        except Exception as e:
            logger.warning("Could not send renewal report: %s", e)
