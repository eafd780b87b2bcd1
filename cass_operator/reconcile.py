import copy
import logging

import httpx
import kopf

from easykube import ApiError

from . import images
from .config import settings
from .models.v1beta1 import ProgressState
from .result import ReconcileResult
from .services import build_services
from .utils import resources_have_same_hash


logger = logging.getLogger(__name__)


#: Service spec fields that are allocated by the platform when not given
PLATFORM_ASSIGNED_SERVICE_FIELDS = (
    "clusterIP",
    "clusterIPs",
    "ipFamilies",
    "ipFamilyPolicy",
    "healthCheckNodePort",
)


class StoreError(Exception):
    """
    Raised when a call to the Kubernetes API fails.
    """
    def __init__(self, action, kind, name, namespace, cause):
        self.action = action
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.cause = cause
        super().__init__(f"could not {action} {kind} '{namespace}/{name}': {cause}")


class ReconcileAttemptsExceeded(Exception):
    """
    Raised when resources are still missing after the maximum number of attempts.
    """
    def __init__(self, kind, attempts):
        self.kind = kind
        self.attempts = attempts
        super().__init__(f"{kind} still missing after {attempts} attempts")


def record_event(owner, reason, message, type = "Normal"):
    """
    Records an event for the owner.

    Events are informational, so failing to record one is logged and otherwise ignored.
    """
    try:
        kopf.event(owner, type = type, reason = reason, message = message)
    except Exception:
        logger.exception(
            "could not record %s event for %s",
            reason,
            owner.get("metadata", {}).get("name")
        )


class ReconciliationContext:
    """
    The state for a single reconcile pass of a datacenter.
    """
    def __init__(
        self,
        client,
        datacenter,
        image_resolver,
        logger = None,
        event_recorder = record_event
    ):
        #: The easykube client for the target cluster
        self.client = client
        #: The datacenter being reconciled
        self.datacenter = datacenter
        #: The resolver used to produce images for the datacenter
        self.image_resolver = image_resolver
        self.logger = logger or logging.getLogger(__name__)
        self.event_recorder = event_recorder
        #: The image parts of the pod spec, once resolved
        self.pod_images = None

    @property
    def owner(self):
        """
        The datacenter as a Kubernetes object, for use in owner references and events.
        """
        return self.datacenter.model_dump(by_alias = True, mode = "json")

    def record_event(self, reason, message, type = "Normal"):
        self.event_recorder(self.owner, reason, message, type = type)


async def set_operator_progress(ctx, progress):
    """
    Saves the given progress in the status of the datacenter, if it has changed.
    """
    datacenter = ctx.datacenter
    if datacenter.status.cassandra_operator_progress == progress:
        return
    name = datacenter.metadata.name
    namespace = datacenter.metadata.namespace
    try:
        ekresource = await ctx.client.api(datacenter.api_version).resource(
            "cassandradatacenters/status"
        )
        _ = await ekresource.patch(
            name,
            { "status": { "cassandraOperatorProgress": progress.value } },
            namespace = namespace
        )
    except httpx.HTTPError as exc:
        raise StoreError("update status for", "datacenter", name, namespace, exc) from exc
    datacenter.status.cassandra_operator_progress = progress


def merge_for_update(desired, current):
    """
    Returns a copy of the desired service that can be used to replace the current
    service.

    Platform-assigned fields that are not set in the desired service are carried
    over from the current service, along with the resource version.
    """
    merged = copy.deepcopy(desired)
    merged_spec = merged.setdefault("spec", {})
    current_spec = current.get("spec", {})
    for field in PLATFORM_ASSIGNED_SERVICE_FIELDS:
        if not merged_spec.get(field) and field in current_spec:
            merged_spec[field] = copy.deepcopy(current_spec[field])
    merged["metadata"]["resourceVersion"] = current["metadata"]["resourceVersion"]
    return merged


async def _services_resource(ctx):
    try:
        return await ctx.client.api("v1").resource("services")
    except httpx.HTTPError as exc:
        raise StoreError(
            "discover",
            "resource",
            "services",
            ctx.datacenter.metadata.namespace,
            exc
        ) from exc


async def _fetch_service(ekservices, name, namespace):
    """
    Returns the named service, or None if it does not exist.
    """
    try:
        return await ekservices.fetch(name, namespace = namespace)
    except ApiError as exc:
        if exc.status_code == 404:
            return None
        else:
            raise StoreError("fetch", "service", name, namespace, exc) from exc
    except httpx.HTTPError as exc:
        raise StoreError("fetch", "service", name, namespace, exc) from exc


async def _update_changed_services(ctx, ekservices, services):
    """
    Updates the services whose content has changed and returns the services
    that do not exist yet.
    """
    create_needed = []
    for desired in services:
        name = desired["metadata"]["name"]
        namespace = desired["metadata"]["namespace"]
        current = await _fetch_service(ekservices, name, namespace)
        if current is None:
            create_needed.append(desired)
        elif not resources_have_same_hash(current, desired):
            ctx.logger.info("updating service %s/%s", namespace, name)
            try:
                _ = await ekservices.replace(
                    name,
                    merge_for_update(desired, current),
                    namespace = namespace
                )
            except httpx.HTTPError as exc:
                raise StoreError("update", "service", name, namespace, exc) from exc
    return create_needed


async def _create_services(ctx, ekservices, services):
    await set_operator_progress(ctx, ProgressState.UPDATING)
    for service in services:
        name = service["metadata"]["name"]
        namespace = service["metadata"]["namespace"]
        ctx.logger.info("creating service %s/%s", namespace, name)
        try:
            _ = await ekservices.create(service, namespace = namespace)
        except httpx.HTTPError as exc:
            raise StoreError("create", "service", name, namespace, exc) from exc
        ctx.record_event("CreatedResource", f"Created service {name}")


async def check_paused(ctx):
    """
    Ends the pass early if reconciliation of the datacenter is paused.
    """
    if ctx.datacenter.spec.paused:
        ctx.logger.info("reconciliation is paused - no action taken")
        return ReconcileResult.done()
    return ReconcileResult.continue_()


async def check_services(ctx):
    """
    Ensures that the services for the datacenter exist and are up-to-date.

    Missing services are created as a batch once every existing service has been
    checked, then the services are checked again. Every batch of creations is
    followed by another check, so no batch is created after the final check.
    """
    max_attempts = settings.reconcile.service_check_max_attempts
    owner = ctx.owner
    try:
        ekservices = await _services_resource(ctx)
        for attempt in range(1, max_attempts + 1):
            services = build_services(ctx.datacenter)
            for service in services:
                kopf.append_owner_reference(service, owner = owner)
            create_needed = await _update_changed_services(ctx, ekservices, services)
            if not create_needed:
                return ReconcileResult.continue_()
            if attempt == max_attempts:
                break
            await _create_services(ctx, ekservices, create_needed)
    except StoreError as exc:
        ctx.logger.error(str(exc))
        return ReconcileResult.error(exc)
    return ReconcileResult.error(ReconcileAttemptsExceeded("services", max_attempts))


async def check_images(ctx):
    """
    Resolves the images for the datacenter pods.
    """
    try:
        ctx.pod_images = images.build_pod_images(ctx.image_resolver, ctx.datacenter)
    except images.UnsupportedVersionError as exc:
        ctx.logger.error(str(exc))
        ctx.record_event("UnsupportedVersion", str(exc), type = "Warning")
        return ReconcileResult.error(exc)
    except images.ConfigError as exc:
        ctx.logger.error(str(exc))
        return ReconcileResult.error(exc)
    return ReconcileResult.continue_()


async def set_operator_ready(ctx):
    """
    Marks the datacenter as ready once every other step has passed.
    """
    try:
        await set_operator_progress(ctx, ProgressState.READY)
    except StoreError as exc:
        ctx.logger.error(str(exc))
        return ReconcileResult.error(exc)
    return ReconcileResult.continue_()


#: The steps of a reconcile pass, in order
RECONCILE_STEPS = [
    check_paused,
    check_services,
    check_images,
    set_operator_ready,
]
