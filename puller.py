#!/usr/bin/env python3
"""
Container auto-puller

Keeps running containers on the newest image available in a registry. On every
tick the containers known to the Docker daemon are scanned, each eligible one is
checked for a newer image (pulling its tag and comparing content identity and
creation time), and containers with a newer image are stopped, removed and
recreated from their previous configuration.
"""

__version__ = "1.0.0"

import copy
import logging
import re
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from docker_api import DockerAPIError, DockerClient, encode_auth
from notify import Notifier
from puller_config import ConfigError, PullerConfig, Verbosity, is_truthy, load_config


# Constants
DEFAULT_TAG = "latest"
FALLBACK_PLATFORM = "linux/amd64"
STOP_TIMEOUT = 10  # seconds, same for every container
DIGEST_PREFIX = "sha256:"

# Logged in quiet mode alongside warnings and errors
UPDATE = 25
logging.addLevelName(UPDATE, 'UPDATE')

_VERBOSITY_LEVELS = {
    Verbosity.QUIET: UPDATE,
    Verbosity.NORMAL: logging.INFO,
    Verbosity.VERBOSE: logging.DEBUG,
}

# Endpoint fields assigned by the daemon at attach time; everything else is replayed.
_RUNTIME_ENDPOINT_FIELDS = (
    'NetworkID', 'EndpointID', 'Gateway', 'IPAddress', 'IPPrefixLen',
    'IPv6Gateway', 'GlobalIPv6Address', 'GlobalIPv6PrefixLen', 'DNSNames',
)

_FRACTION_RE = re.compile(r'\.(\d+)')

logger = logging.getLogger('puller')


def setup_logging(verbosity: Verbosity) -> logging.Logger:
    """Setup logging configuration."""
    root = logging.getLogger()
    root.setLevel(_VERBOSITY_LEVELS[verbosity])

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # connection pool chatter is not useful even in verbose mode
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    return logger


# ---------------------------------------------------------------------------
# Image references and timestamps
# ---------------------------------------------------------------------------

def split_image_reference(ref: str) -> Tuple[str, Optional[str]]:
    """Split an image reference into (repository, tag).

    The tag is None when the reference carries no explicit tag. Digest
    qualifiers (``@sha256:...``) are dropped, and a colon is only treated as
    a tag separator when it comes after the last slash, so registry ports
    (``localhost:5000/app``) survive.
    """
    at_pos = ref.find('@')
    if at_pos != -1:
        ref = ref[:at_pos]

    last_slash = ref.rfind('/')
    last_colon = ref.rfind(':')
    if last_colon > last_slash:
        return ref[:last_colon], ref[last_colon + 1:] or None
    return ref, None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as reported by the daemon.

    Docker reports nanosecond precision; the fraction is cut to microseconds.
    Returns None for missing, malformed or offset-less values.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    if text[-1:] in ('Z', 'z'):
        text = text[:-1] + '+00:00'
    text = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContainerRecord:
    """A container as listed by the daemon."""
    id: str
    name: str
    image_ref: str
    image_id: str
    labels: Dict[str, str] = field(default_factory=dict)
    state: str = ''

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'ContainerRecord':
        # API returns Names as a list with leading slashes, e.g. ["/mycontainer"]
        names = data.get('Names') or []
        container_id = data.get('Id', '')
        return cls(
            id=container_id,
            name=names[0].lstrip('/') if names else container_id[:12],
            image_ref=data.get('Image', ''),
            image_id=data.get('ImageID', ''),
            labels=dict(data.get('Labels') or {}),
            state=data.get('State', ''),
        )


@dataclass(frozen=True)
class ImageDescriptor:
    reference: str
    id: str
    created: Optional[datetime]
    platform: str

    @classmethod
    def from_inspect(cls, reference: str, data: Dict[str, Any]) -> 'ImageDescriptor':
        os_name = data.get('Os') or ''
        arch = data.get('Architecture') or ''
        return cls(
            reference=reference,
            id=data.get('Id', ''),
            created=parse_timestamp(data.get('Created')),
            platform=f"{os_name}/{arch}" if os_name and arch else '',
        )


@dataclass(frozen=True)
class UpdatePlan:
    """Tags to probe for one container, in order, plus the platform to pull."""
    repository: str
    tags: Tuple[str, ...]
    platform: Optional[str]
    fallback_platform: str = FALLBACK_PLATFORM

    @property
    def primary_tag(self) -> str:
        return self.tags[0]

    def reference(self, tag: str) -> str:
        return f"{self.repository}:{tag}"

    @classmethod
    def build(cls, image_ref: str, candidate_tag: Optional[str] = None,
              platform: Optional[str] = None) -> 'UpdatePlan':
        """Primary tag is the reference's own tag (or ``latest``); the candidate goes second."""
        repository, tag = split_image_reference(image_ref)
        tags = [tag or DEFAULT_TAG]
        if candidate_tag and candidate_tag not in tags:
            tags.append(candidate_tag)
        return cls(repository=repository, tags=tuple(tags), platform=platform or None)


@dataclass(frozen=True)
class ScannedContainer:
    record: ContainerRecord
    reference: Optional[str]
    eligible: bool
    reason: str = ''


@dataclass(frozen=True)
class DetectionResult:
    current: ImageDescriptor
    plan: UpdatePlan
    image: Optional[ImageDescriptor] = None
    tag: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.image is not None

    @property
    def on_candidate_tag(self) -> bool:
        return self.available and self.tag != self.plan.primary_tag


@dataclass(frozen=True)
class ContainerSnapshot:
    """Configuration of a container captured before it is stopped.

    Holds private deep copies; create_body() never mutates them.
    """
    id: str
    name: str
    config: Dict[str, Any]
    host_config: Dict[str, Any]
    networks: Dict[str, Dict[str, Any]]

    @classmethod
    def capture(cls, data: Dict[str, Any]) -> 'ContainerSnapshot':
        return cls(
            id=data.get('Id', ''),
            name=(data.get('Name') or '').lstrip('/'),
            config=copy.deepcopy(data.get('Config') or {}),
            host_config=copy.deepcopy(data.get('HostConfig') or {}),
            networks=copy.deepcopy((data.get('NetworkSettings') or {}).get('Networks') or {}),
        )

    @property
    def network_mode(self) -> str:
        return self.host_config.get('NetworkMode') or 'default'

    def _endpoint_settings(self, endpoint: Dict[str, Any]) -> Dict[str, Any]:
        settings = {k: copy.deepcopy(v) for k, v in (endpoint or {}).items()
                    if k not in _RUNTIME_ENDPOINT_FIELDS}
        # The daemon aliases every container by its short id; that alias belongs to the old one
        if settings.get('Aliases'):
            settings['Aliases'] = [a for a in settings['Aliases'] if a != self.id[:12]]
        return settings

    def create_body(self, image: str) -> Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]:
        """Build the container-create body for image.

        Returns (body, extra_networks): the primary network endpoint goes into
        the body, every other network has to be connected after creation.
        """
        network_mode = self.network_mode
        shares_network_namespace = network_mode == 'host' or network_mode.startswith('container:')

        body = copy.deepcopy(self.config)
        body['Image'] = image
        if shares_network_namespace:
            # Hostname is not allowed with host or container: network modes
            body.pop('Hostname', None)
        body['HostConfig'] = copy.deepcopy(self.host_config)

        if network_mode.startswith('container:'):
            return body, {}

        endpoints = {name: self._endpoint_settings(ep) for name, ep in self.networks.items()}
        if not endpoints:
            return body, {}

        primary = network_mode if network_mode in endpoints else next(iter(endpoints))
        body['NetworkingConfig'] = {'EndpointsConfig': {primary: endpoints.pop(primary)}}
        return body, endpoints


class ReconcileState(Enum):
    ELIGIBLE = "eligible"
    CHECKING = "checking"
    NO_UPDATE_NEEDED = "no update needed"
    UPDATE_AVAILABLE = "update available"
    INSPECTING = "inspecting"
    STOPPING = "stopping"
    REMOVING = "removing"
    CREATING = "creating"
    STARTING = "starting"
    RESTARTING = "restarting"
    STARTED = "started"
    FAILED = "failed"


class OutcomeKind(Enum):
    NO_UPDATE = "no_update"
    UPDATED = "updated"
    RESTARTED = "restarted"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ContainerOutcome:
    """Result of processing one container during a tick."""
    name: str
    kind: OutcomeKind
    reason: str = ''
    failed_step: Optional[ReconcileState] = None
    new_image: Optional[str] = None
    states: List[ReconcileState] = field(default_factory=list)


@dataclass
class CleanupResult:
    images_deleted: int = 0
    bytes_reclaimed: int = 0
    error: Optional[str] = None


@dataclass
class TickReport:
    """Everything that happened during one tick.

    This is what gets logged as the summary and what the notifier sends.
    """
    outcomes: List[ContainerOutcome] = field(default_factory=list)
    cleanup: Optional[CleanupResult] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind == kind)

    @property
    def updated(self) -> int:
        return self.count(OutcomeKind.UPDATED)

    @property
    def failed(self) -> int:
        return self.count(OutcomeKind.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(OutcomeKind.SKIPPED)

    @property
    def checked(self) -> int:
        return len(self.outcomes) - self.skipped

    def messages(self, initial: bool = False) -> List[str]:
        """Notification texts for this tick, in the order things happened."""
        if self.error:
            prefix = "Error in initial check" if initial else "Error in check cycle"
            return [f"{prefix}: {self.error}"]

        messages = []
        for outcome in self.outcomes:
            if outcome.kind == OutcomeKind.UPDATED:
                messages.append(f"Successfully updated {outcome.name}")
            elif outcome.kind == OutcomeKind.RESTARTED:
                messages.append(f"Restarted {outcome.name}")
            elif outcome.kind == OutcomeKind.FAILED:
                messages.append(f"Error updating {outcome.name}: {outcome.reason}")
        if self.cleanup and self.cleanup.error:
            messages.append(f"Error pruning old images: {self.cleanup.error}")
        return messages


class DetectionError(Exception):
    """The update check for one container could not be completed."""


class ReconcileError(Exception):
    """A step of the container transition failed."""

    def __init__(self, step: ReconcileState, cause: Exception):
        super().__init__(f"{step.value} failed: {cause}")
        self.step = step
        self.cause = cause


# ---------------------------------------------------------------------------
# Inventory Scanner
# ---------------------------------------------------------------------------

class InventoryScanner:
    """Lists every container and decides which ones are eligible for updates."""

    def __init__(self, client: DockerClient, config: PullerConfig):
        self.client = client
        self.config = config

    def scan(self) -> List[ScannedContainer]:
        """Return all containers (running and stopped) annotated with eligibility.

        A listing failure raises DockerAPIError; it is the caller's job to turn
        that into a failed tick.
        """
        containers = self.client.list_containers(all=True)
        return [self._annotate(ContainerRecord.from_api(c)) for c in containers]

    def _annotate(self, record: ContainerRecord) -> ScannedContainer:
        label = self.config.enable_label
        if self.config.label_enable and not is_truthy(record.labels.get(label)):
            return ScannedContainer(record, None, False, f"missing {label}=true label")

        reference = self.resolve_reference(record)
        if not reference:
            return ScannedContainer(record, None, False, "image has no tag")

        if not self.matches_registry(reference):
            return ScannedContainer(record, reference, False, "image not from configured registry")

        return ScannedContainer(record, reference, True)

    def resolve_reference(self, record: ContainerRecord) -> Optional[str]:
        """Human-readable reference for the container's image.

        Containers created from a content address report ``sha256:...`` or a
        digest-pinned ``repo@sha256:...`` as their image; those are resolved
        through the image's first repo tag.
        """
        ref = record.image_ref
        if not ref.startswith(DIGEST_PREFIX) and '@' + DIGEST_PREFIX not in ref:
            return ref or None

        try:
            image = self.client.inspect_image(record.image_id or ref)
        except DockerAPIError as e:
            logger.debug(f"Could not resolve {record.image_ref} for {record.name}: {e}")
            return None

        tags = [t for t in image.get('RepoTags') or [] if t and t != '<none>:<none>']
        if not tags:
            return None
        logger.debug(f"Resolved digest {record.image_ref} to tag {tags[0]}")
        return tags[0]

    def matches_registry(self, reference: str) -> bool:
        host = self.config.registry.host
        username = self.config.registry.username
        if host and host in reference:
            return True
        # short references may omit the registry host
        if username and username in reference:
            return True
        return not host and not username


# ---------------------------------------------------------------------------
# Update Detector
# ---------------------------------------------------------------------------

def is_newer(current: ImageDescriptor, remote: ImageDescriptor) -> bool:
    """True when remote is a different build created strictly after current.

    Equal content identity is never an update, and neither is a missing or
    unparseable timestamp on either side.
    """
    if remote.id == current.id:
        return False
    if current.created is None or remote.created is None:
        return False
    return remote.created > current.created


class UpdateDetector:
    def __init__(self, client: DockerClient, config: PullerConfig):
        self.client = client
        self.config = config
        registry = config.registry
        self.auth = encode_auth(registry.username, registry.password, registry.url)

    def plan(self, reference: str, platform: Optional[str]) -> UpdatePlan:
        return UpdatePlan.build(reference, self.config.candidate_tag, platform)

    def check(self, scanned: ScannedContainer) -> DetectionResult:
        """
        Determine whether a newer image exists for an eligible container.

        Args:
            scanned: Eligible container with its resolved image reference

        Returns:
            DetectionResult; ``available`` is True for the first tag that
            yielded a newer image

        Raises:
            DetectionError: the current image could not be inspected, or no
                tag of the plan could be pulled
        """
        record = scanned.record
        try:
            current = ImageDescriptor.from_inspect(
                scanned.reference, self.client.inspect_image(record.image_id or record.image_ref))
        except DockerAPIError as e:
            raise DetectionError(f"Error inspecting image for {record.name}: {e}") from e

        plan = self.plan(scanned.reference, current.platform)
        errors = []
        pulled_any = False

        for tag in plan.tags:
            reference = plan.reference(tag)
            logger.debug(f"Checking container {record.name} with tag {tag}")
            try:
                self._pull(plan, tag)
                remote = ImageDescriptor.from_inspect(reference, self.client.inspect_image(reference))
            except DockerAPIError as e:
                logger.error(f"Error pulling {record.name} ({tag}): {e}")
                errors.append(f"{tag}: {e}")
                continue

            pulled_any = True
            if is_newer(current, remote):
                logger.debug(
                    f"Image {reference} for {record.name} is newer "
                    f"(remote: {remote.created} > local: {current.created})"
                )
                return DetectionResult(current=current, plan=plan, image=remote, tag=tag)

            logger.debug(f"Image {reference} for {record.name} is not newer than the running one")

        if not pulled_any:
            raise DetectionError(f"Error pulling {plan.repository}: {'; '.join(errors)}")
        return DetectionResult(current=current, plan=plan)

    def _pull(self, plan: UpdatePlan, tag: str) -> None:
        """Pull one tag for the plan's platform, retrying once with the fallback platform."""
        try:
            self.client.pull_image(plan.repository, tag, plan.platform, self.auth)
        except DockerAPIError as e:
            if not e.is_platform_mismatch:
                raise
            logger.warning(
                f"No {plan.platform or 'default'} manifest for {plan.reference(tag)}, "
                f"retrying with {plan.fallback_platform}"
            )
            self.client.pull_image(plan.repository, tag, plan.fallback_platform, self.auth)


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class Reconciler:
    """Moves a container onto a newer image: stop, remove, recreate, start.

    There is no rollback. If the old container is removed and creating the
    new one fails, the container is gone until someone recreates it; the
    outcome reports the failing step.
    """

    def __init__(self, client: DockerClient, stop_timeout: int = STOP_TIMEOUT):
        self.client = client
        self.stop_timeout = stop_timeout

    def _step(self, states: List[ReconcileState], step: ReconcileState,
              action: Callable[[], Any]) -> Any:
        states.append(step)
        try:
            return action()
        except DockerAPIError as e:
            raise ReconcileError(step, e) from e

    def promote_candidate(self, detection: DetectionResult) -> str:
        """Retag an image found on the candidate tag as the primary tag.

        Returns the reference the new container should use. Both the retag and
        the removal of the candidate tag are best-effort.
        """
        plan = detection.plan
        candidate_ref = plan.reference(detection.tag)
        primary_ref = plan.reference(plan.primary_tag)

        try:
            self.client.tag_image(candidate_ref, plan.repository, plan.primary_tag)
        except DockerAPIError as e:
            logger.warning(f"Failed to retag {candidate_ref} as {plan.primary_tag}: {e}")
            return candidate_ref
        logger.log(UPDATE, f"Retagged {candidate_ref} as {plan.primary_tag}")

        try:
            self.client.remove_image(candidate_ref, force=True)
        except DockerAPIError as e:
            logger.warning(f"Failed to remove old tag {candidate_ref}: {e}")
        else:
            logger.log(UPDATE, f"Removed old tag {candidate_ref}")
        return primary_ref

    def apply(self, scanned: ScannedContainer, detection: DetectionResult) -> ContainerOutcome:
        record = scanned.record
        states = [ReconcileState.UPDATE_AVAILABLE]

        if detection.on_candidate_tag:
            image = self.promote_candidate(detection)
        else:
            image = detection.plan.reference(detection.tag)

        try:
            snapshot = self._step(states, ReconcileState.INSPECTING,
                                  lambda: ContainerSnapshot.capture(self.client.inspect_container(record.id)))

            logger.info(f"Stopping container {record.name}...")
            self._step(states, ReconcileState.STOPPING,
                       lambda: self.client.stop_container(record.id, self.stop_timeout))
            self._step(states, ReconcileState.REMOVING,
                       lambda: self.client.remove_container(record.id))

            logger.info(f"Creating new container {record.name} from {image}...")
            new_id = self._step(states, ReconcileState.CREATING,
                                lambda: self._create(record.name, snapshot, image))
            self._step(states, ReconcileState.STARTING,
                       lambda: self.client.start_container(new_id))
        except ReconcileError as e:
            states.append(ReconcileState.FAILED)
            logger.error(f"Error recreating container {record.name}: {e}")
            return ContainerOutcome(record.name, OutcomeKind.FAILED, reason=str(e),
                                    failed_step=e.step, new_image=image, states=states)

        states.append(ReconcileState.STARTED)
        logger.log(UPDATE, f"Successfully updated {record.name}")
        return ContainerOutcome(record.name, OutcomeKind.UPDATED, new_image=image, states=states)

    def _create(self, name: str, snapshot: ContainerSnapshot, image: str) -> str:
        body, extra_networks = snapshot.create_body(image)
        new_id = self.client.create_container(name, body)
        for network, endpoint in extra_networks.items():
            self.client.connect_network(network, new_id, endpoint)
        return new_id

    def restart(self, scanned: ScannedContainer) -> ContainerOutcome:
        """Restart a container in place, keeping its id. Not used for updates."""
        record = scanned.record
        states = [ReconcileState.NO_UPDATE_NEEDED]
        try:
            logger.info(f"Restarting container {record.name}...")
            self._step(states, ReconcileState.RESTARTING,
                       lambda: self.client.restart_container(record.id, self.stop_timeout))
        except ReconcileError as e:
            states.append(ReconcileState.FAILED)
            logger.error(f"Error restarting container {record.name}: {e}")
            return ContainerOutcome(record.name, OutcomeKind.FAILED, reason=str(e),
                                    failed_step=e.step, states=states)
        states.append(ReconcileState.STARTED)
        return ContainerOutcome(record.name, OutcomeKind.RESTARTED, states=states)


# ---------------------------------------------------------------------------
# Cleanup Manager
# ---------------------------------------------------------------------------

class CleanupManager:
    def __init__(self, client: DockerClient, enabled: bool):
        self.client = client
        self.enabled = enabled

    def run(self, report: TickReport) -> Optional[CleanupResult]:
        """Prune unreferenced images once, if anything was updated this tick."""
        if not self.enabled or report.updated == 0:
            return None

        logger.debug("Cleaning up old images")
        try:
            deleted, reclaimed = self.client.prune_images(dangling=True)
        except DockerAPIError as e:
            logger.warning(f"Error pruning old images: {e}")
            return CleanupResult(error=str(e))

        if deleted:
            logger.info(f"Cleaned up {deleted} images, reclaimed {reclaimed} bytes")
        return CleanupResult(images_deleted=deleted, bytes_reclaimed=reclaimed)


# ---------------------------------------------------------------------------
# Tick runner and scheduler
# ---------------------------------------------------------------------------

class Puller:
    """Runs one scan -> detect -> reconcile -> cleanup pass over all containers."""

    def __init__(self, client: DockerClient, config: PullerConfig,
                 notifier: Optional[Notifier] = None):
        self.config = config
        self.notifier = notifier or Notifier(None)
        self.scanner = InventoryScanner(client, config)
        self.detector = UpdateDetector(client, config)
        self.reconciler = Reconciler(client)
        self.cleanup = CleanupManager(client, config.cleanup)
        self.ticks = 0

    def check_container(self, scanned: ScannedContainer) -> ContainerOutcome:
        record = scanned.record
        if not scanned.eligible:
            logger.debug(f"Skipping {record.name}: {scanned.reason}")
            return ContainerOutcome(record.name, OutcomeKind.SKIPPED, reason=scanned.reason,
                                    states=[ReconcileState.ELIGIBLE])

        states = [ReconcileState.ELIGIBLE, ReconcileState.CHECKING]
        try:
            detection = self.detector.check(scanned)
        except DetectionError as e:
            logger.error(str(e))
            return ContainerOutcome(record.name, OutcomeKind.FAILED, reason=str(e),
                                    failed_step=ReconcileState.CHECKING,
                                    states=states + [ReconcileState.FAILED])

        if not detection.available:
            if self.config.restart_stopped and record.state == 'exited':
                outcome = self.reconciler.restart(scanned)
                outcome.states[:0] = states
                return outcome
            logger.debug(f"No updates needed for {record.name}")
            return ContainerOutcome(record.name, OutcomeKind.NO_UPDATE,
                                    states=states + [ReconcileState.NO_UPDATE_NEEDED])

        logger.log(UPDATE, f"Updating container {record.name} with new image {detection.image.id[:19]}")
        outcome = self.reconciler.apply(scanned, detection)
        outcome.states[:0] = states
        return outcome

    def run_tick(self) -> TickReport:
        report = TickReport()
        started = time.monotonic()

        try:
            containers = self.scanner.scan()
        except DockerAPIError as e:
            report.error = f"error listing containers: {e}"
            report.duration_seconds = time.monotonic() - started
            return report

        eligible = sum(1 for c in containers if c.eligible)
        logger.debug(f"Found {len(containers)} total containers, {eligible} eligible for updates")

        # strictly sequential, in listing order
        for scanned in containers:
            try:
                outcome = self.check_container(scanned)
            except Exception as e:
                logger.exception(f"Unexpected error while processing {scanned.record.name}")
                outcome = ContainerOutcome(scanned.record.name, OutcomeKind.FAILED, reason=str(e))
            report.outcomes.append(outcome)

        report.cleanup = self.cleanup.run(report)
        report.duration_seconds = time.monotonic() - started
        self._log_summary(report)
        return report

    def _log_summary(self, report: TickReport) -> None:
        summary = (
            f"Check completed: {report.updated} updated, {report.failed} failed, "
            f"{report.count(OutcomeKind.NO_UPDATE)} up to date, {report.skipped} skipped "
            f"({report.duration_seconds:.1f}s)"
        )
        if report.updated or report.failed:
            logger.info(summary)
        else:
            logger.debug(summary)

    def tick(self) -> TickReport:
        """Run one tick and publish its report through the notifier."""
        initial = self.ticks == 0
        self.ticks += 1
        try:
            report = self.run_tick()
        except Exception as e:
            logger.exception("Unexpected error during check cycle")
            report = TickReport(error=str(e))

        if report.error:
            logger.error(f"Error in {'initial check' if initial else 'check cycle'}: {report.error}")

        for message in report.messages(initial=initial):
            self.notifier.send(message)
        return report


class Scheduler:
    """Single-worker periodic loop.

    The wait for the next tick is only armed after the previous tick has
    returned, so ticks never overlap. A tick that overruns the interval is
    followed immediately by the next one; missed firings are not queued.
    """

    def __init__(self, interval: float, run_tick: Callable[[], Any],
                 clock: Callable[[], float] = time.monotonic,
                 stop_event: Optional[threading.Event] = None):
        self.interval = interval
        self.run_tick = run_tick
        self.clock = clock
        self._stop = stop_event or threading.Event()

    def stop(self, signum=None, frame=None) -> None:
        if signum is not None:
            logger.info(f"Received signal {signum}, shutting down after the current check...")
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run(self) -> None:
        while not self._stop.is_set():
            started = self.clock()
            self.run_tick()
            if self._stop.is_set():
                break

            delay = started + self.interval - self.clock()
            if delay > 0:
                logger.debug(f"Sleeping for {delay:.1f} seconds...")
                self._stop.wait(delay)


def _log_startup(config: PullerConfig) -> None:
    logger.info(f"Starting puller {__version__} with interval: {config.interval}s")
    logger.info(f"Cleanup enabled: {config.cleanup}")
    logger.info(f"Label filtering enabled: {config.label_enable}")
    if config.verbosity == Verbosity.VERBOSE:
        logger.info("Verbose logging enabled")
    if config.registry.url:
        logger.info(f"Registry: {config.registry.url}")
    if config.registry.anonymous:
        logger.info("No registry credentials configured, pulling anonymously")
    if config.notification_url:
        logger.info(f"Notifications enabled: {config.notification_url}")
    if config.candidate_tag:
        logger.info(f"Additional registry tag to check: {config.candidate_tag}")


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = load_config(argv)
    except ConfigError as e:
        logging.error(f"Configuration error: {e}")
        return 2

    setup_logging(config.verbosity)

    try:
        client = DockerClient()
        client.ping()
    except (DockerAPIError, ValueError) as e:
        logger.error(f"Error connecting to Docker daemon: {e}")
        return 1

    notifier = Notifier(config.notification_url)
    puller = Puller(client, config, notifier)

    _log_startup(config)
    notifier.send(f"Puller started, checking every {config.interval}s")

    if config.run_once:
        puller.tick()
        return 0

    scheduler = Scheduler(config.interval, puller.tick)
    signal.signal(signal.SIGINT, scheduler.stop)
    signal.signal(signal.SIGTERM, scheduler.stop)
    scheduler.run()

    logger.info("Exiting...")
    return 0


if __name__ == '__main__':
    sys.exit(main())
