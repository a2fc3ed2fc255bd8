"""
Progress reporting
Typed events emitted by the sequencer and the sinks that consume them
"""

import queue
import logging
import smtplib
import threading
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Iterable, List, Optional, Union

import requests

from .models import DeploymentBundle, StepId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepStarted:
    step_id: StepId


@dataclass(frozen=True)
class StepSubmitted:
    step_id: StepId
    transaction_hash: str


@dataclass(frozen=True)
class StepConfirmed:
    step_id: StepId
    produced_address: Optional[str] = None


@dataclass(frozen=True)
class StepFailed:
    step_id: StepId
    error: BaseException


@dataclass(frozen=True)
class RunAborted:
    at_step: Optional[StepId]
    error: BaseException


@dataclass(frozen=True)
class RunComplete:
    bundle: DeploymentBundle


ProgressEvent = Union[StepStarted, StepSubmitted, StepConfirmed, StepFailed, RunAborted, RunComplete]


class ProgressReporter:
    """Sink for progress events; implementations must return promptly"""

    def report(self, event: ProgressEvent):
        raise NotImplementedError

    def close(self):
        pass


class LoggingReporter(ProgressReporter):
    """Writes every event to the log"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def report(self, event: ProgressEvent):
        if isinstance(event, StepStarted):
            self.log.info(f"[{event.step_id.value}] started")
        elif isinstance(event, StepSubmitted):
            self.log.info(f"[{event.step_id.value}] tx hash: {event.transaction_hash}")
        elif isinstance(event, StepConfirmed):
            suffix = f" at {event.produced_address}" if event.produced_address else ""
            self.log.info(f"[{event.step_id.value}] confirmed{suffix}")
        elif isinstance(event, StepFailed):
            self.log.error(f"[{event.step_id.value}] failed: {event.error}")
        elif isinstance(event, RunAborted):
            step = event.at_step.value if event.at_step else "preflight"
            self.log.error(f"Deployment aborted at {step}: {event.error}")
        elif isinstance(event, RunComplete):
            bundle = event.bundle
            self.log.info("DEPLOYMENT COMPLETE")
            self.log.info(f"Implementation: {bundle.implementation_address}")
            self.log.info(f"Proxy (token address): {bundle.proxy_address}")
            self.log.info(f"MasterMinter: {bundle.master_minter_address}")


class CollectingReporter(ProgressReporter):
    """Keeps events in memory, for presentation layers that render a log"""

    def __init__(self):
        self.events: List[ProgressEvent] = []

    def report(self, event: ProgressEvent):
        self.events.append(event)

    def of_type(self, kind) -> List[ProgressEvent]:
        return [e for e in self.events if isinstance(e, kind)]


class CallbackReporter(ProgressReporter):
    def __init__(self, callback: Callable[[ProgressEvent], None]):
        self.callback = callback

    def report(self, event: ProgressEvent):
        self.callback(event)


class FanOutReporter(ProgressReporter):
    """Delivers each event to several sinks; one failing sink does not starve the rest"""

    def __init__(self, reporters: Iterable[ProgressReporter]):
        self.reporters = list(reporters)

    def report(self, event: ProgressEvent):
        for reporter in self.reporters:
            try:
                reporter.report(event)
            except Exception as e:
                logger.error(f"Reporter {type(reporter).__name__} failed: {e}")

    def close(self):
        for reporter in self.reporters:
            reporter.close()


class BufferedReporter(ProgressReporter):
    """
    Queues events and forwards them to ``inner`` from a worker thread, so a
    slow sink (a webhook, say) never holds up the sequencer.

    Step progress is dropped when the buffer is full. For failure and
    completion events ``report`` waits for room instead, and only gives up
    with a logged error after ``terminal_timeout`` seconds.
    """

    _STOP = object()
    _TERMINAL = (StepFailed, RunAborted, RunComplete)

    def __init__(self, inner: ProgressReporter, maxsize: int = 1000, terminal_timeout: float = 30.0):
        self.inner = inner
        self.terminal_timeout = terminal_timeout
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._worker = threading.Thread(target=self._drain, name="progress-reporter", daemon=True)
        self._worker.start()

    def report(self, event: ProgressEvent):
        if isinstance(event, self._TERMINAL):
            try:
                self._queue.put(event, timeout=self.terminal_timeout)
            except queue.Full:
                logger.error(f"Progress sink stalled, could not deliver {type(event).__name__}: {event}")
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(f"Progress buffer full, dropping {type(event).__name__}")

    def _drain(self):
        while True:
            event = self._queue.get()
            try:
                if event is self._STOP:
                    return
                self.inner.report(event)
            except Exception as e:
                logger.error(f"Reporter {type(self.inner).__name__} failed: {e}")
            finally:
                self._queue.task_done()

    def flush(self):
        self._queue.join()

    def close(self, timeout: float = 10.0):
        self._queue.put(self._STOP)
        self._worker.join(timeout)
        self.inner.close()


class SlackReporter(ProgressReporter):
    """Posts failures and completed deployments to a Slack webhook"""

    def __init__(self, webhook_url: str, network: str = "", timeout: float = 10):
        self.webhook_url = webhook_url
        self.network = network
        self.timeout = timeout

    def report(self, event: ProgressEvent):
        if isinstance(event, RunAborted):
            step = event.at_step.value if event.at_step else "preflight"
            self._post(f"🚨 Token deployment aborted at {step}: {event.error}", [
                {"title": "Step", "value": step, "short": True},
                {"title": "Error type", "value": type(event.error).__name__, "short": True},
            ])
        elif isinstance(event, RunComplete):
            bundle = event.bundle
            self._post("✅ Token deployment complete", [
                {"title": "Proxy", "value": bundle.proxy_address, "short": False},
                {"title": "Implementation", "value": bundle.implementation_address, "short": False},
                {"title": "MasterMinter", "value": bundle.master_minter_address, "short": False},
            ])

    def _post(self, text: str, fields: List[dict]):
        if self.network:
            fields = fields + [{"title": "Network", "value": self.network, "short": True}]
        payload = {
            "text": text,
            "attachments": [
                {
                    "fields": fields,
                    "ts": int(datetime.now().timestamp()),
                }
            ]
        }
        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()


class EmailReporter(ProgressReporter):
    """Emails an alert when a deployment aborts or completes"""

    def __init__(self, smtp_server: str, smtp_port: int, username: str,
                 password: Optional[str], recipient: str, network: str = ""):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.recipient = recipient
        self.network = network

    def report(self, event: ProgressEvent):
        if isinstance(event, RunAborted):
            step = event.at_step.value if event.at_step else "preflight"
            self._send(
                "Token deployment aborted",
                f"Step: {step}\n"
                f"Error type: {type(event.error).__name__}\n"
                f"Error: {event.error}\n",
            )
        elif isinstance(event, RunComplete):
            bundle = event.bundle
            self._send(
                "Token deployment complete",
                f"Proxy: {bundle.proxy_address}\n"
                f"Implementation: {bundle.implementation_address}\n"
                f"MasterMinter: {bundle.master_minter_address}\n",
            )

    def _send(self, subject: str, details: str):
        msg = MIMEMultipart()
        msg['From'] = self.username
        msg['To'] = self.recipient
        msg['Subject'] = subject

        body = f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
        if self.network:
            body += f"Network: {self.network}\n"
        body += details
        msg.attach(MIMEText(body, 'plain'))

        server = smtplib.SMTP(self.smtp_server, self.smtp_port)
        try:
            server.starttls()
            if self.password is not None:
                server.login(self.username, self.password)
            server.send_message(msg)
        finally:
            server.quit()
