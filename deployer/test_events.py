#!/usr/bin/env python3
"""
Tests for progress events and reporters
"""

import logging
import threading
from unittest.mock import MagicMock, patch

from deployer.errors import Reverted
from deployer.events import (
    BufferedReporter,
    CallbackReporter,
    CollectingReporter,
    EmailReporter,
    FanOutReporter,
    LoggingReporter,
    ProgressReporter,
    RunAborted,
    RunComplete,
    SlackReporter,
    StepConfirmed,
    StepFailed,
    StepStarted,
    StepSubmitted,
)
from deployer.models import DeploymentBundle, StepId

BUNDLE = DeploymentBundle(
    implementation_address="0x0000000000000000000000000000000000001002",
    proxy_address="0x0000000000000000000000000000000000001003",
    master_minter_address="0x0000000000000000000000000000000000001004",
)


class ExplodingReporter(ProgressReporter):
    def report(self, event):
        raise RuntimeError("sink down")


class TestLoggingReporter:
    """Test class for the log sink"""

    def test_logs_each_event(self, caplog):
        reporter = LoggingReporter()
        with caplog.at_level(logging.INFO, logger="deployer.events"):
            reporter.report(StepStarted(StepId.DEPLOY_PROXY))
            reporter.report(StepSubmitted(StepId.DEPLOY_PROXY, "0xabc"))
            reporter.report(StepConfirmed(StepId.DEPLOY_PROXY, BUNDLE.proxy_address))
            reporter.report(RunComplete(BUNDLE))

        assert "[DeployProxy] started" in caplog.text
        assert "0xabc" in caplog.text
        assert f"confirmed at {BUNDLE.proxy_address}" in caplog.text
        assert "DEPLOYMENT COMPLETE" in caplog.text

    def test_failures_logged_as_errors(self, caplog):
        reporter = LoggingReporter()
        with caplog.at_level(logging.INFO, logger="deployer.events"):
            reporter.report(StepFailed(StepId.INITIALIZE_V1, Reverted("already initialized")))
            reporter.report(RunAborted(None, Reverted("x")))

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 2
        assert "already initialized" in errors[0].getMessage()
        assert "preflight" in errors[1].getMessage()


class TestComposedReporters:
    """Test class for collecting, callback and fan-out sinks"""

    def test_collecting_reporter(self):
        reporter = CollectingReporter()
        reporter.report(StepStarted(StepId.DEPLOY_LIBRARY))
        reporter.report(StepConfirmed(StepId.DEPLOY_LIBRARY, "0x01"))
        assert len(reporter.events) == 2
        assert reporter.of_type(StepConfirmed) == [StepConfirmed(StepId.DEPLOY_LIBRARY, "0x01")]

    def test_callback_reporter(self):
        seen = []
        CallbackReporter(seen.append).report(RunComplete(BUNDLE))
        assert seen == [RunComplete(BUNDLE)]

    def test_fan_out_isolates_failing_sink(self):
        collector = CollectingReporter()
        reporter = FanOutReporter([ExplodingReporter(), collector])
        reporter.report(StepStarted(StepId.DEPLOY_LIBRARY))
        assert collector.events == [StepStarted(StepId.DEPLOY_LIBRARY)]


class TestBufferedReporter:
    """Test class for the background-thread sink"""

    def test_delivers_in_order(self):
        collector = CollectingReporter()
        reporter = BufferedReporter(collector)
        events = [StepStarted(step) for step in StepId]
        for event in events:
            reporter.report(event)
        reporter.flush()
        assert collector.events == events
        reporter.close()

    def test_report_does_not_wait_for_slow_sink(self):
        release = threading.Event()
        delivered = []

        def slow(event):
            release.wait(5)
            delivered.append(event)

        reporter = BufferedReporter(CallbackReporter(slow))
        reporter.report(StepStarted(StepId.DEPLOY_LIBRARY))
        reporter.report(StepStarted(StepId.LINK_IMPLEMENTATION))
        # both calls returned while the sink is still blocked
        assert delivered == []
        release.set()
        reporter.close()
        assert len(delivered) == 2

    def test_sink_errors_do_not_stop_worker(self):
        collector = CollectingReporter()
        reporter = BufferedReporter(ExplodingReporter())
        reporter.report(StepStarted(StepId.DEPLOY_LIBRARY))
        reporter.flush()
        reporter.inner = collector
        reporter.report(StepStarted(StepId.DEPLOY_PROXY))
        reporter.close()
        assert collector.events == [StepStarted(StepId.DEPLOY_PROXY)]

    def test_full_buffer_drops(self):
        release = threading.Event()
        delivered = []

        def slow(event):
            release.wait(5)
            delivered.append(event)

        reporter = BufferedReporter(CallbackReporter(slow), maxsize=1)
        for _ in range(5):
            reporter.report(StepStarted(StepId.DEPLOY_LIBRARY))
        release.set()
        reporter.close()
        # one in the sink, at most one queued; the rest were dropped
        assert 1 <= len(delivered) <= 2

    def test_full_buffer_keeps_failure_events(self):
        release = threading.Event()
        delivered = []

        def slow(event):
            release.wait(5)
            delivered.append(event)

        reporter = BufferedReporter(CallbackReporter(slow), maxsize=1)
        for _ in range(3):
            reporter.report(StepStarted(StepId.DEPLOY_LIBRARY))
        threading.Timer(0.2, release.set).start()
        aborted = RunAborted(StepId.DEPLOY_LIBRARY, Reverted("boom"))
        failed = StepFailed(StepId.DEPLOY_LIBRARY, aborted.error)
        reporter.report(failed)
        reporter.report(aborted)
        reporter.close()
        assert delivered[-2:] == [failed, aborted]


class TestSlackReporter:
    """Test class for the Slack webhook sink"""

    def setup_method(self):
        self.reporter = SlackReporter("https://hooks.slack.com/services/T/B/X", network="sepolia")

    @patch('deployer.events.requests.post')
    def test_posts_on_abort(self, mock_post):
        mock_post.return_value = MagicMock()
        self.reporter.report(RunAborted(StepId.CHANGE_PROXY_ADMIN, Reverted("not admin")))

        mock_post.assert_called_once()
        payload = mock_post.call_args[1]['json']
        assert "ChangeProxyAdmin" in payload['text']
        titles = [f['title'] for f in payload['attachments'][0]['fields']]
        assert titles == ["Step", "Error type", "Network"]

    @patch('deployer.events.requests.post')
    def test_posts_on_completion(self, mock_post):
        mock_post.return_value = MagicMock()
        self.reporter.report(RunComplete(BUNDLE))
        payload = mock_post.call_args[1]['json']
        values = [f['value'] for f in payload['attachments'][0]['fields']]
        assert BUNDLE.proxy_address in values

    @patch('deployer.events.requests.post')
    def test_ignores_step_progress(self, mock_post):
        self.reporter.report(StepStarted(StepId.DEPLOY_LIBRARY))
        self.reporter.report(StepConfirmed(StepId.DEPLOY_LIBRARY, "0x01"))
        mock_post.assert_not_called()


class TestEmailReporter:
    """Test class for the SMTP alert sink"""

    def setup_method(self):
        self.reporter = EmailReporter("smtp.example.com", 587, "deployer@example.com", "secret",
                                      "ops@example.com", network="sepolia")

    @patch('deployer.events.smtplib.SMTP')
    def test_emails_on_abort(self, mock_smtp):
        server = mock_smtp.return_value
        self.reporter.report(RunAborted(StepId.INITIALIZE_V2, Reverted("already initialized")))

        mock_smtp.assert_called_once_with("smtp.example.com", 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("deployer@example.com", "secret")
        msg = server.send_message.call_args[0][0]
        assert msg['To'] == "ops@example.com"
        assert msg['Subject'] == "Token deployment aborted"
        body = msg.get_payload()[0].get_payload()
        assert "InitializeV2" in body
        assert "sepolia" in body
        server.quit.assert_called_once()

    @patch('deployer.events.smtplib.SMTP')
    def test_emails_on_completion(self, mock_smtp):
        self.reporter.report(RunComplete(BUNDLE))
        msg = mock_smtp.return_value.send_message.call_args[0][0]
        assert BUNDLE.master_minter_address in msg.get_payload()[0].get_payload()

    @patch('deployer.events.smtplib.SMTP')
    def test_connection_closed_on_failure(self, mock_smtp):
        server = mock_smtp.return_value
        server.send_message.side_effect = OSError("relay refused")
        try:
            self.reporter.report(RunComplete(BUNDLE))
        except OSError:
            pass
        server.quit.assert_called_once()

    @patch('deployer.events.smtplib.SMTP')
    def test_ignores_step_progress(self, mock_smtp):
        self.reporter.report(StepSubmitted(StepId.DEPLOY_LIBRARY, "0x01"))
        mock_smtp.assert_not_called()
