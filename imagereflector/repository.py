"""Reconciliation of image repositories: scanning registries for tags."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

LATEST_TAGS_COUNT = 10
"""Number of tags kept as the latest tags of a scan."""

IMAGE_FINALIZER = "finalizers.fluxcd.io"
RECONCILE_REQUEST_ANNOTATION = "reconcile.fluxcd.io/requestedAt"

READY = "Ready"
RECONCILING = "Reconciling"
STALLED = "Stalled"

SUCCEEDED_REASON = "Succeeded"
FAILED_REASON = "Failed"
PROGRESSING_REASON = "Progressing"
PROGRESSING_WITH_RETRY_REASON = "ProgressingWithRetry"
FEATURE_GATE_DISABLED_REASON = "FeatureGateDisabled"
IMAGE_URL_INVALID_REASON = "ImageURLInvalid"
READ_OPERATION_FAILED_REASON = "ReadOperationFailed"
STATUS_FAILURE = "Failure"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"
EVENT_TRACE = "Trace"

SCAN_REASON_NEVER_SCANNED = "first scan"
SCAN_REASON_RECONCILE_REQUESTED = "reconcile requested"
SCAN_REASON_NEW_IMAGE_NAME = "new image name"
SCAN_REASON_UPDATED_EXCLUSION_LIST = "updated exclusion list"
SCAN_REASON_EMPTY_DATABASE = "no tags in database"
SCAN_REASON_INTERVAL = "triggered by interval"

DEFAULT_REGISTRY = "index.docker.io"
_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:\.|_|__|-+)[a-z0-9]+)*$")
_REGISTRY = re.compile(r"^[A-Za-z0-9.\-]+(?::[0-9]+)?$")

_log = logging.getLogger(__name__)


class TagStore(Protocol):
    def tags(self, repo: str) -> list[str]: ...

    def set_tags(self, repo: str, tags: Iterable[str]) -> str: ...


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    observed_generation: int = 0


@dataclass
class ScanResult:
    revision: str = ""
    tag_count: int = 0
    scan_time: datetime | None = None
    latest_tags: list[str] | None = None


@dataclass
class ImageRepositorySpec:
    image: str = ""
    interval: timedelta = timedelta(minutes=5)
    timeout: timedelta | None = None
    exclusion_list: list[str] = field(default_factory=list)
    provider: str = "generic"
    service_account_name: str = ""
    insecure: bool = False
    suspend: bool = False


@dataclass
class ImageRepositoryStatus:
    conditions: list[Condition] = field(default_factory=list)
    observed_generation: int = 0
    canonical_image_name: str = ""
    last_scan_result: ScanResult | None = None
    observed_exclusion_list: list[str] = field(default_factory=list)
    last_handled_reconcile_at: str = ""


@dataclass
class ImageRepository:
    name: str = ""
    namespace: str = ""
    generation: int = 0
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime | None = None
    spec: ImageRepositorySpec = field(default_factory=ImageRepositorySpec)
    status: ImageRepositoryStatus = field(default_factory=ImageRepositoryStatus)

    def get_condition(self, condition_type: str) -> Condition | None:
        return next((c for c in self.status.conditions if c.type == condition_type), None)

    def set_condition(self, condition_type: str, status: str, reason: str, message: str) -> None:
        cond = Condition(condition_type, status, reason, message, self.generation)
        for i, existing in enumerate(self.status.conditions):
            if existing.type == condition_type:
                self.status.conditions[i] = cond
                return
        self.status.conditions.append(cond)

    def delete_condition(self, condition_type: str) -> None:
        self.status.conditions = [c for c in self.status.conditions if c.type != condition_type]

    def is_ready(self) -> bool:
        cond = self.get_condition(READY)
        return cond is not None and cond.status == "True"

    def exclusion_list(self) -> list[str]:
        return list(self.spec.exclusion_list)

    def _condition_is_true(self, condition_type: str) -> bool:
        cond = self.get_condition(condition_type)
        return cond is not None and cond.status == "True"

    def _copy(self) -> ImageRepository:
        import copy

        return copy.deepcopy(self)


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    insecure: bool = False

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}"


def parse_image_reference(image: str, insecure: bool) -> ImageReference:
    """Parse a repository name without tag or digest; raise ``ValueError`` if invalid."""
    if "://" in image:
        raise ValueError(f"image {image!r} must not contain a scheme")
    parts = image.split("/")
    first = parts[0]
    if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
        registry, path = first, parts[1:]
        if not _REGISTRY.match(registry):
            raise ValueError(f"invalid registry in image {image!r}")
    else:
        registry, path = DEFAULT_REGISTRY, parts
    if registry in ("docker.io", "registry-1.docker.io"):
        registry = DEFAULT_REGISTRY
    if not path or not all(_COMPONENT.match(p) for p in path):
        raise ValueError(f"could not parse reference: {image}")
    if registry == DEFAULT_REGISTRY and len(path) == 1:
        path = ["library", *path]
    return ImageReference(registry, "/".join(path), insecure)


@dataclass(frozen=True)
class Event:
    event_type: str
    reason: str
    message: str

    def __str__(self) -> str:
        return f"{self.event_type} {self.reason} {self.message}"


class EventRecorder:
    """Collects the events emitted for objects."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def record(self, obj, event_type: str, reason: str, message: str) -> None:
        self.events.append(Event(event_type, reason, message))


@dataclass(frozen=True)
class ScanDecision:
    scan: bool
    next_scan: timedelta
    reason: str = ""


@dataclass(frozen=True)
class ReconcileResult:
    requeue: bool = False
    requeue_after: timedelta = timedelta(0)


def filter_out_tags(tags: Iterable[str], patterns: Iterable[str]) -> list[str]:
    """Return the tags that match none of ``patterns``."""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ValueError(f"failed to compile regex {pattern}: {exc}") from exc
    return [t for t in tags if not any(r.search(t) for r in compiled)]


def sort_tags_and_get_latest_tags(tags: list[str]) -> list[str]:
    """Sort ``tags`` in place in descending order and return the first ten."""
    tags.sort(reverse=True)
    return tags[:LATEST_TAGS_COUNT]


def is_equal_slice_content(a: Iterable[str] | None, b: Iterable[str] | None) -> bool:
    a, b = list(a or []), list(b or [])
    return len(a) == len(b) and all(x in b for x in a)


def _event_log(recorder: EventRecorder, obj, event_type: str, reason: str, message: str) -> None:
    if event_type == EVENT_WARNING:
        _log.error("%s: %s", reason, message)
    else:
        _log.info("%s", message)
    recorder.record(obj, event_type, reason, message)


def notify(recorder: EventRecorder, old_obj: ImageRepository, new_obj: ImageRepository,
           next_scan_msg: str) -> None:
    """Emit an event describing the change between ``old_obj`` and ``new_obj``."""
    ready = new_obj.get_condition(READY) or Condition(READY, "Unknown")
    old_ready = old_obj.get_condition(READY)
    old_msg = old_ready.message if old_ready else ""
    if old_obj.is_ready() and new_obj.is_ready() and old_msg != ready.message:
        _event_log(recorder, new_obj, EVENT_NORMAL, ready.reason, ready.message)
    elif not old_obj.is_ready() and new_obj.is_ready():
        _event_log(recorder, new_obj, EVENT_NORMAL, ready.reason, ready.message)
    elif not new_obj.is_ready():
        _event_log(recorder, new_obj, EVENT_WARNING, ready.reason, ready.message)
    else:
        _event_log(recorder, new_obj, EVENT_TRACE, SUCCEEDED_REASON, next_scan_msg)


def _format_duration(d: timedelta) -> str:
    total = d.total_seconds()
    hours, rest = divmod(int(total), 3600)
    minutes, seconds = divmod(rest, 60)
    frac = total - int(total)
    secs = f"{seconds + frac:g}s"
    if hours:
        return f"{hours}h{minutes}m{secs}"
    if minutes:
        return f"{minutes}m{secs}"
    return secs


class _Stalled(Exception):
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class ImageRepositoryReconciler:
    """Scans image repositories and records their tags."""

    def __init__(self, database: TagStore, list_tags: Callable[[ImageReference], list[str]],
                 recorder: EventRecorder | None = None, controller_name: str = "image-reflector-controller"):
        self.database = database
        self.list_tags = list_tags
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.controller_name = controller_name

    def reconcile(self, obj: ImageRepository, now: datetime | None = None) -> ReconcileResult:
        """Reconcile ``obj``; raise on failure after recording status and events."""
        now = now or datetime.now(timezone.utc)
        if obj.deletion_timestamp is not None:
            return self.reconcile_delete(obj)
        if IMAGE_FINALIZER not in obj.finalizers:
            obj.finalizers.append(IMAGE_FINALIZER)
            return ReconcileResult(requeue=True)
        if obj.spec.suspend:
            _log.info("reconciliation is suspended for this object")
            return ReconcileResult()

        old_obj = obj._copy()
        next_scan_msg = ""
        error: Exception | None = None
        result = ReconcileResult()
        try:
            result, next_scan_msg = self._reconcile(obj, old_obj, now)
        except _Stalled as stalled:
            obj.set_condition(STALLED, "True", stalled.reason, str(stalled))
            obj.set_condition(READY, "False", stalled.reason, str(stalled))
            obj.delete_condition(RECONCILING)
        except Exception as exc:
            error = exc
            obj.set_condition(RECONCILING, "True", PROGRESSING_WITH_RETRY_REASON,
                              obj.get_condition(RECONCILING).message
                              if obj.get_condition(RECONCILING) else "")
        else:
            scan = obj.status.last_scan_result
            msg = f"successful scan: found {scan.tag_count} tags with checksum {scan.revision}"
            obj.set_condition(READY, "True", SUCCEEDED_REASON, msg)
            obj.delete_condition(RECONCILING)
            obj.status.observed_generation = obj.generation
        notify(self.recorder, old_obj, obj, next_scan_msg)
        if error is not None:
            raise error
        return result

    def _reconcile(self, obj: ImageRepository, old_obj: ImageRepository,
                   now: datetime) -> tuple[ReconcileResult, str]:
        if obj.spec.provider != "generic" and obj.spec.service_account_name:
            raise _Stalled(
                FEATURE_GATE_DISABLED_REASON,
                "to use spec.serviceAccountName for provider authentication please enable "
                "the ObjectLevelWorkloadIdentity feature gate in the controller",
            )
        obj.set_condition(RECONCILING, "True", PROGRESSING_REASON, "reconciliation in progress")
        if obj.generation != obj.status.observed_generation:
            obj.set_condition(
                RECONCILING, "True", PROGRESSING_REASON,
                f"processing object: new generation {obj.status.observed_generation} -> {obj.generation}",
            )
        try:
            ref = parse_image_reference(obj.spec.image, obj.spec.insecure)
        except ValueError as exc:
            raise _Stalled(IMAGE_URL_INVALID_REASON, str(exc)) from exc
        obj.delete_condition(STALLED)

        try:
            decision = self.should_scan(obj, now)
        except Exception as exc:
            msg = f"failed to determine if it's scan time: {exc}"
            obj.set_condition(READY, "False", STATUS_FAILURE, msg)
            raise RuntimeError(msg) from exc

        when = _format_duration(decision.next_scan)
        if decision.scan:
            if decision.reason == SCAN_REASON_EMPTY_DATABASE:
                obj.set_condition(READY, "Unknown", PROGRESSING_REASON, f"scanning: {decision.reason}")
            obj.set_condition(RECONCILING, "True", PROGRESSING_REASON, f"scanning: {decision.reason}")
            try:
                self.scan(obj, ref)
            except Exception as exc:
                msg = f"scan failed: {exc}"
                obj.set_condition(READY, "False", READ_OPERATION_FAILED_REASON, msg)
                raise RuntimeError(msg) from exc
            next_msg = f"next scan in {when}"
            old_scan = old_obj.status.last_scan_result
            if old_scan is not None and old_scan.revision == obj.status.last_scan_result.revision:
                next_msg = "tags did not change, " + next_msg
            else:
                next_msg = "successful scan, " + next_msg
        else:
            next_msg = f"no change in repository configuration since last scan, next scan in {when}"

        obj.status.canonical_image_name = str(ref)
        obj.status.observed_exclusion_list = obj.exclusion_list()
        return ReconcileResult(requeue_after=decision.next_scan), next_msg

    def should_scan(self, obj: ImageRepository, now: datetime) -> ScanDecision:
        """Decide whether ``obj`` is to be scanned now, and when the next scan is due."""
        interval = obj.spec.interval
        last = obj.status.last_scan_result
        if last is None:
            return ScanDecision(True, interval, SCAN_REASON_NEVER_SCANNED)
        sync_at = obj.annotations.get(RECONCILE_REQUEST_ANNOTATION)
        if sync_at is not None and sync_at != obj.status.last_handled_reconcile_at:
            return ScanDecision(True, interval, SCAN_REASON_RECONCILE_REQUESTED)
        ref = parse_image_reference(obj.spec.image, obj.spec.insecure)
        if str(ref) != obj.status.canonical_image_name:
            return ScanDecision(True, interval, SCAN_REASON_NEW_IMAGE_NAME)
        if not is_equal_slice_content(obj.exclusion_list(), obj.status.observed_exclusion_list):
            return ScanDecision(True, interval, SCAN_REASON_UPDATED_EXCLUSION_LIST)
        if not self.database.tags(obj.status.canonical_image_name):
            return ScanDecision(True, interval, SCAN_REASON_EMPTY_DATABASE)
        when = interval - (now - last.scan_time)
        if when < timedelta(seconds=1):
            return ScanDecision(True, interval, SCAN_REASON_INTERVAL)
        return ScanDecision(False, when)

    def scan(self, obj: ImageRepository, ref: ImageReference) -> None:
        """List the tags of ``ref``, store them and record the result on ``obj``."""
        tags = self.list_tags(ref)
        filtered = filter_out_tags(tags, obj.exclusion_list())
        latest = sort_tags_and_get_latest_tags(filtered)
        canonical = str(ref)
        try:
            checksum = self.database.set_tags(canonical, filtered)
        except Exception as exc:
            raise RuntimeError(f"failed to set tags for {canonical!r}: {exc}") from exc
        obj.status.last_scan_result = ScanResult(
            revision=checksum,
            tag_count=len(filtered),
            scan_time=datetime.now(timezone.utc),
            latest_tags=latest or None,
        )
        token = obj.annotations.get(RECONCILE_REQUEST_ANNOTATION)
        if token is not None:
            obj.status.last_handled_reconcile_at = token

    def reconcile_delete(self, obj: ImageRepository) -> ReconcileResult:
        """Release ``obj`` for deletion."""
        if IMAGE_FINALIZER in obj.finalizers:
            obj.finalizers.remove(IMAGE_FINALIZER)
        return ReconcileResult()