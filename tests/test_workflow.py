"""Tests for the renewal state machine, driven through a scripted browser."""

import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from fakes import (
    COMPLETED_HTML,
    CONFIG,
    LOGIN_URL,
    PANEL_URL,
    TOO_EARLY_HTML,
    TWO_FACTOR_URL,
    UNKNOWN_HTML,
    FakeSession,
    make_credentials,
)
from xvps_renew.environment.cookies import CookieRecord, CookieStore
from xvps_renew.runner.workflow import (
    TERMINAL_STATES,
    UNRECOGNIZED_REASON,
    Capabilities,
    CaptchaUnsolved,
    InvalidTransition,
    LoginRejected,
    RenewalFailed,
    RenewalWorkflow,
    WorkflowEvent,
    WorkflowState,
    classify_result,
    current_totp,
    next_state,
)
from xvps_renew.settings import ConfigurationError
from xvps_renew.solver.captcha_solver import Failed, Solved

S = WorkflowState
SEL = CONFIG.selectors
SERVER_LINK = SEL.server_detail.format(id_vps="40012345")
HAPPY_PATH = [
    S.UNAUTHENTICATED, S.LOGGING_IN, S.AUTHENTICATED, S.NAVIGATING,
    S.CAPTCHA_CHALLENGE, S.SUBMITTING, S.SUCCEEDED,
]


def solver_returning(outcome):
    solver = MagicMock()
    if isinstance(outcome, BaseException):
        solver.solve.side_effect = outcome
    else:
        solver.solve.return_value = outcome
    return solver


class WorkflowTestCase(unittest.TestCase):

    def setUp(self):
        self.notifier = MagicMock()
        self.solver = solver_returning(Solved("483920", "ensemble", 1.0))

    def build(self, session, credentials=None, capabilities=None, cookie_store=None, **kwargs):
        credentials = credentials or make_credentials()
        return RenewalWorkflow(
            credentials=credentials,
            config=CONFIG,
            solver=self.solver,
            session_factory=lambda: session,
            notifier=self.notifier,
            cookie_store=cookie_store,
            capabilities=capabilities,
            **kwargs,
        )


class TestHappyPath(WorkflowTestCase):

    def test_renewal_with_recording(self):
        session = FakeSession(result_html=COMPLETED_HTML)
        wf = self.build(session, capabilities=Capabilities(recording_enabled=True))

        attempt = wf.run()

        self.assertEqual(attempt.state, S.SUCCEEDED)
        self.assertEqual(attempt.history, HAPPY_PATH)
        self.assertEqual(session.captures, 1)
        self.assertIn(("fill", SEL.captcha_input, "483920"), session.calls)
        self.assertEqual(session.selectors("click"), [
            SEL.login_button, SERVER_LINK, SEL.renew_button,
            SEL.continue_button, SEL.captcha_submit,
        ])
        self.assertEqual(session.stopped, 1)
        self.assertEqual(session.closed, 1)
        self.notifier.send_file.assert_called_once()
        self.assertEqual(self.notifier.send_file.call_args.args[0],
                         Path("recordings") / "renewal.webm")
        self.notifier.send_message.assert_called_once()
        self.assertIn("completed", self.notifier.send_message.call_args.args[0])

    def test_credentials_go_into_login_form(self):
        session = FakeSession()
        self.build(session).run()
        self.assertEqual(session.calls[0], ("navigate", LOGIN_URL))
        self.assertIn(("fill", SEL.username, "xv1234567"), session.calls)
        self.assertIn(("fill", SEL.password, "hunter2"), session.calls)

    def test_no_recording_unless_enabled(self):
        session = FakeSession()
        attempt = self.build(session).run()
        self.assertEqual(session.stopped, 0)
        self.assertIsNone(attempt.recording_path)
        self.notifier.send_file.assert_not_called()

    def test_too_early_is_a_normal_ending(self):
        session = FakeSession(result_html=TOO_EARLY_HTML)
        attempt = self.build(session).run()

        self.assertEqual(attempt.state, S.TOO_EARLY)
        self.assertIsNotNone(attempt.reason)
        self.assertIn("not yet available", self.notifier.send_message.call_args.args[0])


class TestTwoFactor(WorkflowTestCase):

    def test_totp_code_is_entered_when_configured(self):
        session = FakeSession(landing_url=TWO_FACTOR_URL)
        totp = MagicMock(return_value="654321")
        credentials = make_credentials(totp_secret="JBSWY3DPEHPK3PXP")
        wf = self.build(session, credentials=credentials, totp_provider=totp)

        attempt = wf.run()

        self.assertEqual(attempt.state, S.SUCCEEDED)
        self.assertEqual(attempt.history[:4], [
            S.UNAUTHENTICATED, S.LOGGING_IN, S.TWO_FACTOR_PENDING, S.AUTHENTICATED,
        ])
        totp.assert_called_once_with("JBSWY3DPEHPK3PXP")
        totp_fills = [c for c in session.calls if c[0] == "fill" and c[1] == SEL.totp_input]
        self.assertEqual(totp_fills, [("fill", SEL.totp_input, "654321")])

    def test_second_factor_without_secret_is_a_config_error(self):
        session = FakeSession(landing_url=TWO_FACTOR_URL)
        wf = self.build(session)

        with self.assertRaises(ConfigurationError):
            wf.run()

        self.assertEqual(wf.attempt.state, S.FAILED)
        self.assertEqual(wf.attempt.history[-2], S.TWO_FACTOR_PENDING)
        self.assertNotIn(SERVER_LINK, session.selectors("click"))
        self.assertEqual(session.closed, 1)
        self.notifier.send_message.assert_called_once()

    def test_rejected_login(self):
        session = FakeSession(landing_url=LOGIN_URL)
        wf = self.build(session)

        with self.assertRaises(LoginRejected):
            wf.run()
        self.assertEqual(wf.attempt.state, S.FAILED)
        self.assertEqual(session.captures, 0)

    def test_slow_redirect_after_login_is_awaited(self):
        session = FakeSession(deferred_landing=True)
        attempt = self.build(session).run()

        self.assertEqual(attempt.state, S.SUCCEEDED)
        self.assertEqual(attempt.history[:3], [S.UNAUTHENTICATED, S.LOGGING_IN, S.AUTHENTICATED])
        self.assertIn(("wait_for_url",), session.calls)

    def test_slow_redirect_to_second_factor_page(self):
        session = FakeSession(landing_url=TWO_FACTOR_URL, deferred_landing=True)
        credentials = make_credentials(totp_secret="JBSWY3DPEHPK3PXP")
        wf = self.build(session, credentials=credentials,
                        totp_provider=MagicMock(return_value="654321"))

        attempt = wf.run()

        self.assertEqual(attempt.state, S.SUCCEEDED)
        self.assertIn(S.TWO_FACTOR_PENDING, attempt.history)
        self.assertEqual(session.calls.count(("wait_for_url",)), 2)


class TestCurrentTotp(unittest.TestCase):
    # RFC 6238 appendix B, SHA1 seed "12345678901234567890", truncated to 6 digits.
    SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"

    def test_reference_vectors(self):
        self.assertEqual(current_totp(self.SECRET, for_time=59), "287082")
        self.assertEqual(current_totp(self.SECRET, for_time=1111111109), "081804")
        self.assertEqual(current_totp(self.SECRET, for_time=1234567890), "005924")

    def test_same_code_within_one_step(self):
        self.assertEqual(current_totp(self.SECRET, for_time=30),
                         current_totp(self.SECRET, for_time=59))

    def test_current_code_is_six_digits(self):
        code = current_totp(self.SECRET)
        self.assertEqual(len(code), 6)
        self.assertTrue(code.isdigit())


class TestFailures(WorkflowTestCase):

    def test_unrecognized_result_page(self):
        session = FakeSession(result_html=UNKNOWN_HTML)
        wf = self.build(session)

        with self.assertRaises(RenewalFailed):
            wf.run()

        self.assertEqual(wf.attempt.state, S.FAILED)
        self.assertEqual(wf.attempt.reason, UNRECOGNIZED_REASON)
        self.assertEqual(wf.attempt.history[-2], S.SUBMITTING)
        self.assertEqual(session.closed, 1)
        self.assertIn(UNRECOGNIZED_REASON, self.notifier.send_message.call_args.args[0])

    def test_unsolved_captcha_is_not_submitted(self):
        self.solver = solver_returning(Failed("no variant yielded a 6-digit code"))
        session = FakeSession()
        wf = self.build(session)

        with self.assertRaises(CaptchaUnsolved):
            wf.run()

        self.assertEqual(wf.attempt.state, S.FAILED)
        self.assertEqual(wf.attempt.history[-2], S.CAPTCHA_CHALLENGE)
        self.assertTrue(wf.attempt.reason.startswith("captcha unsolved"))
        self.assertNotIn(SEL.captcha_input, session.selectors("fill"))
        self.assertNotIn(SEL.captcha_submit, session.selectors("click"))

    def test_navigation_error_still_cleans_up(self):
        session = FakeSession(fail_on_click=SEL.renew_button)
        wf = self.build(session, capabilities=Capabilities(recording_enabled=True))

        with self.assertRaises(TimeoutError):
            wf.run()

        self.assertEqual(wf.attempt.state, S.FAILED)
        self.assertEqual(wf.attempt.history[-2], S.NAVIGATING)
        self.assertTrue(wf.attempt.reason.startswith("TimeoutError"))
        self.assertEqual(session.stopped, 1)
        self.assertEqual(session.closed, 1)
        self.notifier.send_file.assert_called_once()
        self.notifier.send_message.assert_called_once()
        self.solver.solve.assert_not_called()

    def test_interrupt_is_recorded_and_reraised(self):
        self.solver = solver_returning(KeyboardInterrupt())
        session = FakeSession()
        wf = self.build(session)

        with self.assertRaises(KeyboardInterrupt):
            wf.run()

        self.assertEqual(wf.attempt.state, S.FAILED)
        self.assertEqual(wf.attempt.reason, "interrupted")
        self.assertEqual(session.closed, 1)

    def test_notifier_errors_do_not_escape(self):
        self.notifier.send_message.side_effect = RuntimeError("discord down")
        self.notifier.send_file.side_effect = RuntimeError("discord down")
        session = FakeSession()
        wf = self.build(session, capabilities=Capabilities(recording_enabled=True))

        attempt = wf.run()
        self.assertEqual(attempt.state, S.SUCCEEDED)
        self.assertEqual(session.closed, 1)

    def test_session_factory_failure(self):
        def broken():
            raise RuntimeError("chromium not installed")

        wf = RenewalWorkflow(
            credentials=make_credentials(),
            config=CONFIG,
            solver=self.solver,
            session_factory=broken,
            notifier=self.notifier,
        )
        with self.assertRaises(RuntimeError):
            wf.run()
        self.assertEqual(wf.attempt.history, [S.UNAUTHENTICATED, S.FAILED])
        self.notifier.send_message.assert_called_once()


class TestSessionReuse(WorkflowTestCase):

    def setUp(self):
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.store = CookieStore(Path(self._tmp.name) / "cookies.json")

    def tearDown(self):
        self._tmp.cleanup()

    def test_cookies_saved_after_login(self):
        session = FakeSession()
        self.build(session, cookie_store=self.store).run()

        self.assertEqual(
            [c.as_tuple() for c in self.store.load()],
            [("XSERVER_SID", "abc123", ".xserver.ne.jp", "/", True)],
        )

    def test_valid_saved_session_skips_login(self):
        saved = [CookieRecord("XSERVER_SID", "old", ".xserver.ne.jp", "/", True)]
        self.store.save(saved)
        session = FakeSession()
        wf = self.build(session, cookie_store=self.store,
                        capabilities=Capabilities(reuse_session=True))

        attempt = wf.run()

        self.assertEqual(attempt.state, S.SUCCEEDED)
        self.assertEqual(attempt.history[:2], [S.UNAUTHENTICATED, S.AUTHENTICATED])
        self.assertEqual(session.added_cookies, saved)
        self.assertNotIn(("navigate", LOGIN_URL), session.calls)
        self.assertNotIn(SEL.login_button, session.selectors("click"))

    def test_expired_session_falls_back_to_login(self):
        self.store.save([CookieRecord("XSERVER_SID", "stale")])
        session = FakeSession(redirects={PANEL_URL: LOGIN_URL})
        wf = self.build(session, cookie_store=self.store,
                        capabilities=Capabilities(reuse_session=True))

        attempt = wf.run()

        self.assertEqual(attempt.history[:3], [S.UNAUTHENTICATED, S.LOGGING_IN, S.AUTHENTICATED])
        self.assertIn(SEL.login_button, session.selectors("click"))
        self.assertEqual(self.store.load()[0].value, "abc123")

    def test_unreadable_store_falls_back_to_login(self):
        self.store.path.write_text("{not json", encoding="utf-8")
        session = FakeSession()
        wf = self.build(session, cookie_store=self.store,
                        capabilities=Capabilities(reuse_session=True))

        attempt = wf.run()
        self.assertEqual(attempt.history[1], S.LOGGING_IN)

    def test_login_only_saves_cookies_without_report(self):
        session = FakeSession()
        wf = self.build(session, cookie_store=self.store)

        attempt = wf.login_only()

        self.assertEqual(attempt.state, S.AUTHENTICATED)
        self.assertTrue(self.store.exists())
        self.assertEqual(session.captures, 0)
        self.assertEqual(session.closed, 1)
        self.notifier.send_message.assert_not_called()

    def test_login_only_needs_a_cookie_store(self):
        factory = MagicMock()
        wf = RenewalWorkflow(
            credentials=make_credentials(),
            config=CONFIG,
            solver=self.solver,
            session_factory=factory,
            notifier=self.notifier,
        )

        with self.assertRaises(ConfigurationError):
            wf.login_only()
        factory.assert_not_called()
        self.assertIsNone(wf.attempt)


class TestTransitions(unittest.TestCase):

    def test_invalid_transition_raises(self):
        with self.assertRaises(InvalidTransition):
            next_state(S.UNAUTHENTICATED, WorkflowEvent.CAPTCHA_SOLVED)
        with self.assertRaises(InvalidTransition):
            next_state(S.AUTHENTICATED, WorkflowEvent.RENEWED)

    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            for event in WorkflowEvent:
                with self.assertRaises(InvalidTransition):
                    next_state(state, event)

    def test_error_ends_every_open_state(self):
        for state in WorkflowState:
            if state not in TERMINAL_STATES:
                self.assertEqual(next_state(state, WorkflowEvent.ERROR), S.FAILED)


class TestClassifyResult(unittest.TestCase):

    def test_phrase_split_across_tags(self):
        html = "<p>利用期限の<b>更新手続き</b>が完了しました。</p>"
        event = classify_result(html, CONFIG.phrases.completed, CONFIG.phrases.too_early)
        self.assertEqual(event, WorkflowEvent.RENEWED)

    def test_too_early_and_unknown(self):
        phrases = CONFIG.phrases
        self.assertEqual(classify_result(TOO_EARLY_HTML, phrases.completed, phrases.too_early),
                         WorkflowEvent.TOO_EARLY)
        self.assertEqual(classify_result(UNKNOWN_HTML, phrases.completed, phrases.too_early),
                         WorkflowEvent.UNRECOGNIZED_RESULT)


if __name__ == "__main__":
    unittest.main()
