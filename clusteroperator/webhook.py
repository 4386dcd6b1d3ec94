"""HTTPS admission webhook that audits requests and always allows them."""

from __future__ import annotations

import json
import logging
import os
import queue
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import urlsplit

from clusteroperator.kube import (
    AdmissionAttributes,
    GroupVersionKind,
    GroupVersionResource,
    Operation,
    UserInfo,
)
from clusteroperator.validator import Forbidden

log = logging.getLogger(__name__)

STATUS_ACCEPTED = 202
STATUS_FORBIDDEN = 403

_TEXT_HEADERS = {
    "Content-Type": "text/plain; charset=utf-8",
    "X-Content-Type-Options": "nosniff",
}
_JSON_HEADERS = {"Content-Type": "application/json"}

Response = tuple[int, dict, bytes]


class AdmissionRequestError(ValueError):
    """Raised when an admission request cannot be used."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


def _header(headers: Any, name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return ""


def parse_request(headers: Mapping, body: bytes) -> dict:
    """Return the admission review in a request, raising AdmissionRequestError if unusable."""
    content_type = _header(headers, "Content-Type")
    if content_type != "application/json":
        raise AdmissionRequestError(
            f'Content-Type: "{content_type}" should be "application/json"')
    if not body:
        raise AdmissionRequestError("admission request body is empty")
    try:
        review = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise AdmissionRequestError(
            f"could not parse admission review request: {exc}") from exc
    if not isinstance(review, dict):
        raise AdmissionRequestError(
            "could not parse admission review request: not a JSON object")
    if not isinstance(review.get("request"), dict):
        raise AdmissionRequestError("admission review can't be used: Request field is nil")
    return review


def review_response(uid: str, error: Optional[BaseException]) -> dict:
    """Build the admission review response; requests are never denied, only audited."""
    status = STATUS_ACCEPTED if error is None else STATUS_FORBIDDEN
    reason = ""
    message = "valid" if error is None else str(error)
    if isinstance(error, Forbidden):
        reason = "Forbidden"
        status = STATUS_FORBIDDEN
    if status != STATUS_ACCEPTED:
        log.debug("admission audit: %s", error)

    result: dict[str, Any] = {"code": STATUS_ACCEPTED, "message": message}
    if reason:
        result["reason"] = reason
    return {
        "kind": "AdmissionReview",
        "apiVersion": "admission.k8s.io/v1",
        "response": {"uid": uid, "allowed": True, "status": result},
    }


def notify_changes(paths: Iterable[str], stop_event: threading.Event,
                   interval: float = 2.0) -> "queue.Queue[Optional[bool]]":
    """Poll files for changes.

    The returned queue receives True when any file changes (at most one pending
    notice at a time) and None once ``stop_event`` is set.
    """
    watched = list(paths)

    def snapshot() -> dict:
        infos = {}
        for path in watched:
            try:
                infos[path] = ("mtime", os.stat(path).st_mtime_ns)
            except OSError as exc:
                infos[path] = ("error", str(exc))
        return infos

    changes: "queue.Queue[Optional[bool]]" = queue.Queue()
    last = snapshot()

    def watch() -> None:
        nonlocal last
        while not stop_event.wait(interval):
            current = snapshot()
            if current == last:
                continue
            last = current
            if changes.empty():
                changes.put(True)
        changes.put(None)

    threading.Thread(target=watch, name="tls-watch", daemon=True).start()
    return changes


def _split_addr(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    return host, int(port or 0)


def _object_gvk(obj: dict) -> GroupVersionKind:
    group, _, version = str(obj.get("apiVersion", "") or "").rpartition("/")
    return GroupVersionKind(group=group, version=version, kind=str(obj.get("kind", "") or ""))


def _decode(raw: Any, expected: GroupVersionKind) -> dict:
    gvk = _object_gvk(raw) if isinstance(raw, dict) else None
    if gvk is None or gvk != expected:
        raise AdmissionRequestError(f"unexpected GVK {gvk}. Expected {expected}")
    return raw


def _convert_extra(extra: Any) -> Optional[dict]:
    if extra is None:
        return None
    return {key: [str(v) for v in values or []] for key, values in extra.items()}


def _operation(value: str) -> Any:
    try:
        return Operation(value)
    except ValueError:
        return value


class AdmissionWebhook:
    """Serves /health and /validate over TLS, restarting when the key pair changes."""

    def __init__(self, addr: str, cert_file: str, key_file: str, validator: Any,
                 watcher: Any = None, reload_interval: float = 2.0,
                 poll_interval: float = 0.1) -> None:
        self.addr = addr
        self.cert_file = cert_file
        self.key_file = key_file
        self.validator = validator
        self.watcher = watcher
        self.reload_interval = reload_interval
        self.poll_interval = poll_interval

    def handle_health(self) -> Response:
        return 200, dict(_TEXT_HEADERS), b"OK"

    def handle_validate(self, headers: Mapping, body: bytes) -> Response:
        """Validate an admission review and return status, headers and body."""
        try:
            review = parse_request(headers, body)
        except AdmissionRequestError as exc:
            return self._failure(exc, exc.status, "")

        request = review["request"]
        uid = str(request.get("uid", "") or "")
        kind_data = request.get("kind") or {}
        kind = GroupVersionKind(group=kind_data.get("group", ""),
                                version=kind_data.get("version", ""),
                                kind=kind_data.get("kind", ""))
        operation = _operation(str(request.get("operation", "") or ""))

        error: Optional[BaseException] = None
        if self.validator.handles(operation):
            try:
                old_object = None
                if request.get("oldObject") is not None:
                    old_object = _decode(request["oldObject"], kind)
                obj = None
                if request.get("object") is not None:
                    obj = _decode(request["object"], kind)
            except AdmissionRequestError as exc:
                return self._failure(exc, exc.status, uid)

            resource = request.get("resource") or {}
            user = request.get("userInfo") or {}
            attrs = AdmissionAttributes(
                object=obj,
                old_object=old_object,
                kind=kind,
                namespace=str(request.get("namespace", "") or ""),
                name=str(request.get("name", "") or ""),
                resource=GroupVersionResource(group=resource.get("group", ""),
                                              version=resource.get("version", ""),
                                              resource=resource.get("resource", "")),
                subresource=str(request.get("subResource", "") or ""),
                operation=operation,
                options=None,
                dry_run=False,
                user_info=UserInfo(name=user.get("username", ""),
                                   uid=user.get("uid", ""),
                                   groups=list(user.get("groups") or []),
                                   extra=_convert_extra(user.get("extra"))),
            )
            try:
                self.validator.validate(attrs)
            except Exception as exc:  # any validator error is reported, never fatal
                error = exc

        response = review_response(uid, error)
        return 200, dict(_JSON_HEADERS), json.dumps(response).encode()

    @staticmethod
    def _failure(error: BaseException, status: int, uid: str) -> Response:
        log.error("review response uid=%s status=%d: %s", uid, status, error)
        return status, dict(_TEXT_HEADERS), f"{error}\n".encode()

    def _handler_class(self) -> type:
        webhook = self

        class _Handler(BaseHTTPRequestHandler):
            def _dispatch(self) -> None:
                path = urlsplit(self.path).path
                if path == "/health":
                    status, headers, body = webhook.handle_health()
                elif path == "/validate":
                    length = int(self.headers.get("Content-Length") or 0)
                    status, headers, body = webhook.handle_validate(
                        self.headers, self.rfile.read(length))
                else:
                    status, headers, body = 404, dict(_TEXT_HEADERS), b"404 page not found\n"
                self.send_response(status)
                for key, value in headers.items():
                    self.send_header(key, value)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = _dispatch

            def log_message(self, fmt: str, *args: Any) -> None:
                log.debug(fmt, *args)

        return _Handler

    def _launch(self) -> tuple[ThreadingHTTPServer, "queue.Queue[BaseException]"]:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.cert_file, self.key_file)
        server = ThreadingHTTPServer(_split_addr(self.addr), self._handler_class())
        server.socket = context.wrap_socket(server.socket, server_side=True)
        errors: "queue.Queue[BaseException]" = queue.Queue()

        def serve() -> None:
            try:
                server.serve_forever()
            except Exception as exc:  # reported to run() through the queue
                errors.put(exc)

        threading.Thread(target=serve, name="webhook-server", daemon=True).start()
        return server, errors

    @staticmethod
    def _close(server: ThreadingHTTPServer) -> None:
        server.shutdown()
        server.server_close()

    def run(self, stop_event: threading.Event) -> None:
        """Serve until ``stop_event`` is set; server failures are raised."""
        log.info("starting webhook HTTP server")
        watch_stop = threading.Event()
        shutdowns: list[threading.Thread] = []
        try:
            changes = notify_changes([self.cert_file, self.key_file], watch_stop,
                                     self.reload_interval)
            server, errors = self._launch()
            while True:
                if stop_event.wait(self.poll_interval):
                    self._close(server)
                    return
                try:
                    raise errors.get_nowait()
                except queue.Empty:
                    pass
                try:
                    change = changes.get_nowait()
                except queue.Empty:
                    continue
                if change is None:
                    self._close(server)
                    return
                log.info("TLS input has changed, restarting HTTP server")
                old = server
                closer = threading.Thread(target=self._close, args=(old,), daemon=True)
                closer.start()
                shutdowns.append(closer)
                server, errors = self._launch()
        finally:
            watch_stop.set()
            for closer in shutdowns:
                closer.join(timeout=5)
            log.info("stopping webhook HTTP server")