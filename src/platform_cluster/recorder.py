"""Event recording: broadcaster, recorders and the lazily initialised provider."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from kubernetes import client as k8s_client
from kubernetes.client import Configuration
from structlog.typing import BindableLogger

from platform_cluster.clients import new_api_client
from platform_cluster.scheme import Scheme, object_meta

log = structlog.get_logger()

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
_VALID_EVENT_TYPES = {EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING}

DEFAULT_QUEUE_SIZE = 1000

# Upper bound on how long stopping a provider waits for queued events to be delivered.
DEFAULT_SHUTDOWN_TIMEOUT = 5.0

EventHandler = Callable[[k8s_client.CoreV1Event], None]

# Returns the broadcaster and whether the caller owns it (and must shut it down).
BroadcasterFactory = Callable[[], tuple["EventBroadcaster", bool]]


class EventSink:
    """Writes events to the API server."""

    def __init__(self, api_client: k8s_client.ApiClient) -> None:
        self._api = k8s_client.CoreV1Api(api_client)

    def create(self, event: k8s_client.CoreV1Event) -> None:
        self._api.create_namespaced_event(event.metadata.namespace, event)


class EventBroadcaster:
    """Fans events out to watchers from a background dispatch thread.

    The dispatch thread starts with the broadcaster, which is why callers defer
    creating one until an event is actually recorded.
    """

    _SHUTDOWN = object()

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
        self._lock = threading.Lock()
        self._watchers: list[EventHandler] = []
        self._shut_down = False
        self._thread = threading.Thread(target=self._dispatch, name="event-broadcaster", daemon=True)
        self._thread.start()

    def start_event_watcher(self, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for every future event. Returns an unsubscribe function."""
        with self._lock:
            self._watchers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._watchers:
                    self._watchers.remove(handler)

        return unsubscribe

    def start_recording_to_sink(self, sink: EventSink) -> Callable[[], None]:
        def write(event: k8s_client.CoreV1Event) -> None:
            try:
                sink.create(event)
            except Exception as exc:
                log.error(
                    "failed_to_write_event",
                    reason=event.reason,
                    object=event.involved_object.name,
                    error=str(exc),
                )

        return self.start_event_watcher(write)

    def start_structured_logging(self, logger: BindableLogger) -> Callable[[], None]:
        def emit(event: k8s_client.CoreV1Event) -> None:
            ref = event.involved_object
            logger.info(
                "event_recorded",
                type=event.type,
                reason=event.reason,
                message=event.message,
                kind=ref.kind,
                namespace=ref.namespace,
                name=ref.name,
                source=event.source.component if event.source else None,
            )

        return self.start_event_watcher(emit)

    def new_recorder(self, scheme: Scheme, source: str) -> EventRecorder:
        return EventRecorder(self, scheme, source)

    def action(self, event: k8s_client.CoreV1Event) -> bool:
        """Queue ``event`` for dispatch. Returns False if it was dropped."""
        if self._shut_down:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            log.warning("event_dropped", reason=event.reason, queue_size=self._queue.maxsize)
            return False
        return True

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop dispatching. Queued events are delivered first, for at most ``timeout`` seconds.

        Events still queued when the timeout expires are delivered by the daemon
        dispatch thread in the background or lost at process exit.
        """
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            self._queue.put(self._SHUTDOWN, timeout=timeout)
        except queue.Full:
            log.warning("event_broadcaster_shutdown_timed_out", pending=self._queue.qsize())
            return
        self._thread.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        if self._thread.is_alive():
            log.warning("event_broadcaster_shutdown_timed_out", pending=self._queue.qsize())

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def _dispatch(self) -> None:
        while True:
            event = self._queue.get()
            if event is self._SHUTDOWN:
                return
            with self._lock:
                watchers = list(self._watchers)
            for handler in watchers:
                try:
                    handler(event)
                except Exception:
                    log.exception("event_watcher_failed", reason=event.reason)


class EventRecorder:
    """Records events about objects on behalf of a named source component."""

    def __init__(self, broadcaster: EventBroadcaster, scheme: Scheme, source: str) -> None:
        self._broadcaster = broadcaster
        self._scheme = scheme
        self._source = source

    @property
    def source(self) -> str:
        return self._source

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        self._generate(obj, None, event_type, reason, message)

    def eventf(self, obj: Any, event_type: str, reason: str, message_fmt: str, *args: Any) -> None:
        self._generate(obj, None, event_type, reason, message_fmt % args if args else message_fmt)

    def annotated_eventf(
        self,
        obj: Any,
        annotations: dict[str, str],
        event_type: str,
        reason: str,
        message_fmt: str,
        *args: Any,
    ) -> None:
        self._generate(obj, annotations, event_type, reason, message_fmt % args if args else message_fmt)

    def _generate(
        self,
        obj: Any,
        annotations: dict[str, str] | None,
        event_type: str,
        reason: str,
        message: str,
    ) -> None:
        if event_type not in _VALID_EVENT_TYPES:
            log.error("unsupported_event_type", event_type=event_type, reason=reason)
            return
        try:
            ref = self._reference(obj)
        except Exception as exc:
            log.error("could_not_reference_object", reason=reason, error=str(exc))
            return
        self._broadcaster.action(self._make_event(ref, annotations, event_type, reason, message))

    def _reference(self, obj: Any) -> k8s_client.V1ObjectReference:
        gvk = self._scheme.object_kind(obj)
        namespace, name, _ = object_meta(obj)
        meta = obj.metadata
        return k8s_client.V1ObjectReference(
            api_version=gvk.api_version,
            kind=gvk.kind,
            name=name,
            namespace=namespace,
            uid=meta.get("uid") if isinstance(meta, dict) else getattr(meta, "uid", None),
            resource_version=(
                meta.get("resourceVersion") if isinstance(meta, dict) else getattr(meta, "resource_version", None)
            ),
        )

    def _make_event(
        self,
        ref: k8s_client.V1ObjectReference,
        annotations: dict[str, str] | None,
        event_type: str,
        reason: str,
        message: str,
    ) -> k8s_client.CoreV1Event:
        now = datetime.now(UTC)
        namespace = ref.namespace or "default"
        return k8s_client.CoreV1Event(
            metadata=k8s_client.V1ObjectMeta(
                name=f"{ref.name}.{time.time_ns():x}",
                namespace=namespace,
                annotations=annotations,
            ),
            involved_object=ref,
            reason=reason,
            message=message,
            type=event_type,
            source=k8s_client.V1EventSource(component=self._source),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )


class Provider:
    """Hands out event recorders backed by a broadcaster that is created on first use.

    Building a provider allocates nothing in the background. The broadcaster factory
    runs the first time any recorder emits an event, and its ownership flag decides
    whether stop() shuts the broadcaster down. Recording stops only together with an
    owned broadcaster; a caller-supplied one keeps receiving events after stop().
    """

    def __init__(
        self,
        scheme: Scheme,
        sink: EventSink,
        logger: BindableLogger,
        make_broadcaster: BroadcasterFactory,
    ) -> None:
        self._scheme = scheme
        self._sink = sink
        self._logger = logger
        self._make_broadcaster = make_broadcaster
        self._lock = threading.Lock()
        self._broadcaster: EventBroadcaster | None = None
        self._owns_broadcaster = False
        self._stop_requested = False
        self._stopped = False

    @property
    def scheme(self) -> Scheme:
        return self._scheme

    @property
    def owns_broadcaster(self) -> bool:
        return self._owns_broadcaster

    @property
    def broadcaster_created(self) -> bool:
        with self._lock:
            return self._broadcaster is not None

    def get_event_recorder_for(self, name: str) -> _LazyRecorder:
        return _LazyRecorder(self, name)

    def get_broadcaster(self) -> EventBroadcaster | None:
        """Return the broadcaster, creating it on first call. None once recording has stopped."""
        discarded: EventBroadcaster | None = None
        with self._lock:
            if self._stopped:
                return None
            if self._broadcaster is None:
                broadcaster, owned = self._make_broadcaster()
                if owned and self._stop_requested:
                    # First event after stop(): an owned broadcaster would outlive the provider.
                    self._stopped = True
                    discarded = broadcaster
                else:
                    broadcaster.start_recording_to_sink(self._sink)
                    broadcaster.start_structured_logging(self._logger)
                    self._broadcaster = broadcaster
                    self._owns_broadcaster = owned
            broadcaster = self._broadcaster
        if discarded is not None:
            discarded.shutdown(0)
        return broadcaster

    @property
    def stopped(self) -> bool:
        with self._lock:
            return self._stopped

    def stop(self, timeout: float | None = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Stop recording if this provider owns the broadcaster, waiting at most ``timeout`` seconds.

        A caller-supplied broadcaster is left running and recorders keep writing to it.
        """
        with self._lock:
            self._stop_requested = True
            broadcaster = self._broadcaster
            owned = self._owns_broadcaster
            if broadcaster is not None and owned:
                self._stopped = True
        if broadcaster is not None and owned:
            broadcaster.shutdown(timeout)


class _LazyRecorder:
    """Recorder that materialises its broadcaster on the first event."""

    def __init__(self, provider: Provider, name: str) -> None:
        self._provider = provider
        self._name = name
        self._lock = threading.Lock()
        self._recorder: EventRecorder | None = None

    @property
    def source(self) -> str:
        return self._name

    def _get(self) -> EventRecorder | None:
        if self._provider.stopped:
            return None
        with self._lock:
            if self._recorder is None:
                broadcaster = self._provider.get_broadcaster()
                if broadcaster is None:
                    return None
                self._recorder = broadcaster.new_recorder(self._provider.scheme, self._name)
            return self._recorder

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        recorder = self._get()
        if recorder is None:
            log.debug("event_dropped_after_stop", source=self._name, reason=reason)
            return
        recorder.event(obj, event_type, reason, message)

    def eventf(self, obj: Any, event_type: str, reason: str, message_fmt: str, *args: Any) -> None:
        recorder = self._get()
        if recorder is None:
            log.debug("event_dropped_after_stop", source=self._name, reason=reason)
            return
        recorder.eventf(obj, event_type, reason, message_fmt, *args)

    def annotated_eventf(
        self,
        obj: Any,
        annotations: dict[str, str],
        event_type: str,
        reason: str,
        message_fmt: str,
        *args: Any,
    ) -> None:
        recorder = self._get()
        if recorder is None:
            log.debug("event_dropped_after_stop", source=self._name, reason=reason)
            return
        recorder.annotated_eventf(obj, annotations, event_type, reason, message_fmt, *args)


def new_provider(
    config: Configuration,
    api_client: k8s_client.ApiClient | None,
    scheme: Scheme,
    logger: BindableLogger,
    make_broadcaster: BroadcasterFactory,
) -> Provider:
    """Default recorder provider builder. The broadcaster factory is not invoked here."""
    sink = EventSink(api_client or new_api_client(config))
    return Provider(scheme, sink, logger, make_broadcaster)
