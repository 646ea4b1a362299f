from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Optional

from opportunityos.config import Settings
from opportunityos.coordinator import LifecycleCoordinator
from opportunityos.demo import ConsoleNotifier, DemoAnalytics, DemoSpecGenerator
from opportunityos.integrations.kiro_agent import KiroAgent
from opportunityos.integrations.openai_spec_writer import OpenAISpecWriter
from opportunityos.integrations.slack_notifier import SlackNotifier
from opportunityos.integrations.userpilot_client import UserpilotClient
from opportunityos.interactions_http import start_interactions_server, stop_interactions_server
from opportunityos.opportunity_detector import OpportunityDetector
from opportunityos.opportunity_store import OpportunityStore
from opportunityos.scheduler import DetectionScheduler


logger = logging.getLogger("opportunityos.app")


def build_spec_generator(settings: Settings) -> Any:
    if settings.demo:
        return DemoSpecGenerator()
    if settings.spec_backend == "openai":
        return OpenAISpecWriter(settings.openai, settings.data_dir)
    return KiroAgent(settings.kiro)


class OpportunityOS:
    def __init__(
        self,
        settings: Settings,
        *,
        store: OpportunityStore | None = None,
        analytics: Any | None = None,
        notifier: Any | None = None,
        spec_generator: Any | None = None,
        serve_http: bool | None = None,
    ):
        self.settings = settings
        self.store = store or OpportunityStore(settings.data_store_path)
        self.detector = OpportunityDetector(settings.detection)
        if settings.demo:
            self.analytics = analytics or DemoAnalytics()
            self.notifier = notifier or ConsoleNotifier()
        else:
            self.analytics = analytics or UserpilotClient(settings.userpilot)
            self.notifier = notifier or SlackNotifier(settings.slack)
        self.spec_generator = spec_generator or build_spec_generator(settings)

        self.coordinator = LifecycleCoordinator(
            self.store,
            self.detector,
            self.analytics,
            self.notifier,
            self.spec_generator,
            auto_generate_specs=settings.auto_generate_specs,
        )
        self.scheduler = DetectionScheduler(settings.schedule, self._scheduled_detection, settings.data_dir)
        # The demo notifier never receives clicks, so there is nothing to serve.
        self.serve_http = (not settings.demo) if serve_http is None else serve_http
        self.http_server = None
        self._stop_event = threading.Event()
        self._started = False
        self._lock = threading.Lock()

    def _scheduled_detection(self) -> None:
        report = self.coordinator.run_detection()
        logger.info("Scheduled detection report", extra={"report": report.to_dict()})

    def initialize(self) -> None:
        self.store.initialize()

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self.store.initialize()
            self.notifier.on_action(self.coordinator.handle_action)
            self.scheduler.start()
            if self.serve_http:
                self.http_server = start_interactions_server(
                    self.settings.server.host,
                    self.settings.server.port,
                    notifier=self.notifier,
                    store=self.store,
                    signing_secret=self.settings.slack.signing_secret,
                )
            self._stop_event.clear()
            self._started = True
            logger.info("OpportunityOS started", extra={"demo": self.settings.demo})

    def stop(self) -> None:
        with self._lock:
            if not self._started:
                return
            self.scheduler.stop()
            if self.http_server is not None:
                stop_interactions_server(self.http_server)
                self.http_server = None
            self._started = False
            self._stop_event.set()
            logger.info("OpportunityOS stopped")

    def request_stop(self, signum: Optional[int] = None, frame=None) -> None:
        logger.info("Shutdown requested", extra={"signal": signum})
        self._stop_event.set()

    def run_forever(self) -> None:
        self.start()
        signal.signal(signal.SIGINT, self.request_stop)
        signal.signal(signal.SIGTERM, self.request_stop)
        try:
            while not self._stop_event.wait(timeout=1):
                pass
        finally:
            self.stop()
