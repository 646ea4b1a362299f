import hashlib
import hmac
import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

from opportunityos.errors import ErrorType
from opportunityos.version import VERSION

logger = logging.getLogger("opportunityos.http")

REPLAY_WINDOW_SECONDS = 60 * 5
MAX_BODY_BYTES = 1024 * 1024


def compute_slack_signature(signing_secret: str, timestamp: str, body: bytes) -> str:
    base = b"v0:" + timestamp.encode("utf-8") + b":" + (body or b"")
    digest = hmac.new(signing_secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"v0={digest}"


def verify_slack_signature(signing_secret: str, timestamp, signature, body: bytes, now: float | None = None) -> bool:
    ts = str(timestamp or "").strip()
    sig = str(signature or "").strip()
    if not signing_secret or not ts or not sig:
        return False
    try:
        ts_value = int(ts)
    except ValueError:
        return False

    current = int(now if now is not None else time.time())
    # Replay protection.
    if abs(current - ts_value) > REPLAY_WINDOW_SECONDS:
        return False
    return hmac.compare_digest(compute_slack_signature(signing_secret, ts, body), sig)


def parse_interaction_payload(body: bytes) -> dict | None:
    form = parse_qs(body.decode("utf-8", errors="replace"))
    raw = form.get("payload", [""])[0]
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


class InteractionsHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address, RequestHandlerClass, *, notifier, store, signing_secret: str, max_workers: int = 4):
        super().__init__(server_address, RequestHandlerClass)
        self.notifier = notifier
        self.store = store
        self.signing_secret = signing_secret
        self.action_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="opportunityos-action")
        self.metrics_lock = threading.Lock()
        self.metrics = {"interactions_received": 0, "interactions_rejected": 0}

    def increment_metric(self, metric_name: str):
        with self.metrics_lock:
            self.metrics[metric_name] = int(self.metrics.get(metric_name, 0)) + 1

    def snapshot_metrics(self) -> dict:
        with self.metrics_lock:
            return dict(self.metrics)

    def submit_interaction(self, payload: dict, request_id: str):
        return self.action_pool.submit(self._process_interaction, payload, request_id)

    def _process_interaction(self, payload: dict, request_id: str) -> int:
        try:
            return self.notifier.handle_interaction(payload)
        except Exception:
            logger.exception("Interaction processing failed", extra={"request_id": request_id})
            return 0

    def shutdown_workers(self, wait: bool = True):
        self.action_pool.shutdown(wait=wait)


class Handler(BaseHTTPRequestHandler):
    server_version = f"OpportunityOS/{VERSION}"

    def _ensure_request_id(self) -> str:
        if not hasattr(self, "request_id"):
            incoming_request_id = str(self.headers.get("X-Request-Id", "")).strip()
            self.request_id = incoming_request_id or str(uuid.uuid4())
        return self.request_id

    def _send(self, code: int, body: dict):
        payload = json.dumps(body).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("X-Request-Id", self._ensure_request_id())
        self.end_headers()
        self.wfile.write(payload)

    def _send_error(self, status_code: int, error_type: str, message: str):
        return self._send(
            status_code,
            {"ok": False, "error": {"type": error_type, "message": message}, "request_id": self._ensure_request_id()},
        )

    def log_message(self, format, *args):
        logger.debug("http %s", format % args, extra={"request_id": getattr(self, "request_id", "")})

    def do_GET(self):
        path = urlparse(self.path).path
        if path != "/health":
            return self._send_error(404, ErrorType.NOT_FOUND, "not_found")
        try:
            counts = self.server.store.count_by_status()
        except Exception:
            logger.exception("Health check failed", extra={"request_id": self._ensure_request_id()})
            return self._send_error(500, ErrorType.SERVER_ERROR, "health_check_failed")
        return self._send(
            200,
            {"ok": True, "version": VERSION, "opportunities": counts, "metrics": self.server.snapshot_metrics()},
        )

    def do_POST(self):
        path = urlparse(self.path).path
        if path != "/slack/actions":
            return self._send_error(404, ErrorType.NOT_FOUND, "not_found")

        request_id = self._ensure_request_id()
        length = int(self.headers.get("Content-Length", "0") or 0)
        if length > MAX_BODY_BYTES:
            return self._send_error(413, ErrorType.CLIENT_ERROR, "payload_too_large")
        body = self.rfile.read(length) if length > 0 else b""

        if not verify_slack_signature(
            self.server.signing_secret,
            self.headers.get("X-Slack-Request-Timestamp"),
            self.headers.get("X-Slack-Signature"),
            body,
        ):
            self.server.increment_metric("interactions_rejected")
            logger.warning("Rejected Slack request with invalid signature", extra={"request_id": request_id})
            return self._send_error(401, ErrorType.UNAUTHORIZED, "invalid_signature")

        payload = parse_interaction_payload(body)
        if payload is None:
            return self._send_error(400, ErrorType.CLIENT_ERROR, "invalid_payload")

        self.server.increment_metric("interactions_received")
        # Slack wants an answer within 3 seconds; the work happens after the ack.
        self._send(200, {"ok": True})
        self.server.submit_interaction(payload, request_id)


def start_interactions_server(host="127.0.0.1", port=3000, *, notifier, store, signing_secret: str):
    server = InteractionsHTTPServer((host, port), Handler, notifier=notifier, store=store, signing_secret=signing_secret)
    t = threading.Thread(target=server.serve_forever, daemon=True, name="opportunityos-http")
    t.start()
    logger.info("Interactions server listening", extra={"host": host, "port": server.server_address[1]})
    return server


def stop_interactions_server(server: InteractionsHTTPServer):
    server.shutdown()
    server.server_close()
    server.shutdown_workers(wait=True)
