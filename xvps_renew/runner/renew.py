#!/usr/bin/env python3
"""Entry point: renew the free VPS once.

Usage:
    python -m xvps_renew.runner.renew                          # full renewal
    python -m xvps_renew.runner.renew --mode login             # log in, save cookies, stop
    python -m xvps_renew.runner.renew --reuse-session          # skip login while cookies are valid
    python -m xvps_renew.runner.renew --record                 # record video, upload to webhook
    python -m xvps_renew.runner.renew --strategy per_variant   # skip the ensemble call
    python -m xvps_renew.runner.renew --headed --report        # visible browser, JSON report

Exit codes: 0 renewed or too early, 1 failed, 2 configuration error,
130 interrupted.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from xvps_renew.environment.browser_session import (
    LaunchOptions,
    PlaywrightSession,
    fetch_latest_user_agent,
)
from xvps_renew.environment.cookies import CookieStore
from xvps_renew.notify.webhook import build_notifier
from xvps_renew.runner.report import AttemptReport
from xvps_renew.runner.workflow import Capabilities, RenewalError, RenewalWorkflow
from xvps_renew.settings import (
    PROJECT_ROOT,
    ConfigurationError,
    Credentials,
    SiteConfig,
    load_config,
    load_credentials,
)
from xvps_renew.solver.captcha_solver import CaptchaSolver, SolverStrategy
from xvps_renew.solver.vision_classifier import GeminiClassifier

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def build_session_factory(config: SiteConfig):
    """Zero-argument launcher for the workflow."""
    def launch() -> PlaywrightSession:
        user_agent = None
        if config.browser.user_agent_url:
            user_agent = fetch_latest_user_agent(config.browser.user_agent_url)
        options = LaunchOptions(
            headless=config.browser.headless,
            navigation_timeout_ms=config.timeouts.navigation_ms,
            settle_timeout_ms=config.timeouts.settle_ms,
            locale=config.browser.locale,
            user_agent=user_agent,
        )
        return PlaywrightSession.launch(options)
    return launch


def build_workflow(
    credentials: Credentials,
    config: SiteConfig,
    notifier,
    capabilities: Capabilities,
    diagnostics: bool = True,
) -> RenewalWorkflow:
    classifier = GeminiClassifier(
        api_key=credentials.gemini_api_key,
        model=config.gemini.model,
        temperature=config.gemini.temperature,
        timeout_seconds=config.timeouts.classification_s,
    )
    solver = CaptchaSolver(
        classifier,
        notifier=notifier if diagnostics else None,
        strategy=capabilities.solver_strategy,
        classify_timeout=config.timeouts.classification_s,
    )
    return RenewalWorkflow(
        credentials=credentials,
        config=config,
        solver=solver,
        session_factory=build_session_factory(config),
        notifier=notifier,
        cookie_store=CookieStore(config.paths.cookie_store),
        capabilities=capabilities,
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Renew the XServer free VPS")
    parser.add_argument("--mode", default="renew", choices=["renew", "login"])
    parser.add_argument("--config", default=None, help="Site config YAML")
    parser.add_argument("--env-file", default=None, help="Credentials .env file")
    parser.add_argument(
        "--strategy", default=SolverStrategy.ENSEMBLE.value,
        choices=[s.value for s in SolverStrategy],
    )
    parser.add_argument("--reuse-session", action="store_true",
                        help="Load saved cookies and skip login if still valid")
    parser.add_argument("--record", action="store_true", help="Record a browser video")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--no-diagnostics", action="store_true",
                        help="Do not upload captcha variants to the webhook")
    parser.add_argument("--report", nargs="?", const="", default=None,
                        help="Write a JSON report (default path from config)")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
    )

    load_dotenv(args.env_file or PROJECT_ROOT / ".env")
    try:
        credentials = load_credentials()
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error("%s", e)
        return EXIT_CONFIG

    if args.headed:
        config.browser.headless = False

    capabilities = Capabilities.resolve(
        credentials,
        config,
        record=args.record,
        reuse_session=args.reuse_session,
        strategy=SolverStrategy(args.strategy),
    )

    with build_notifier(credentials.webhook_url) as notifier:
        workflow = build_workflow(
            credentials, config, notifier, capabilities,
            diagnostics=not args.no_diagnostics,
        )
        try:
            if args.mode == "login":
                workflow.login_only()
                logger.info("Session cookies saved to %s", config.paths.cookie_store)
            else:
                workflow.run()
            exit_code = EXIT_OK
        except ConfigurationError as e:
            logger.error("Configuration error: %s", e)
            exit_code = EXIT_CONFIG
        except KeyboardInterrupt:
            logger.warning("Interrupted")
            exit_code = EXIT_INTERRUPTED
        except RenewalError as e:
            logger.error("Renewal failed: %s", e.reason)
            exit_code = EXIT_FAILED
        except Exception as e:
            logger.error(f"Renewal error: {e}", exc_info=True)
            exit_code = EXIT_FAILED

    if args.mode == "renew" and workflow.attempt is not None:
        report = AttemptReport.from_attempt(workflow.attempt)
        if args.report is not None:
            report_path = Path(args.report or config.paths.report)
            report.save(report_path)
            logger.info("Report written to %s", report_path)
        report.print_summary()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
