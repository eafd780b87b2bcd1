import functools
import logging
import sys

import kopf

from easykube import Configuration

from . import images, reconcile
from .config import settings
from .models import v1beta1 as api
from .result import run_pipeline

logger = logging.getLogger(__name__)


#: The easykube client for the cluster, created when the operator starts
ekclient = None

#: The image resolver for the operator
#: A new configuration is applied by replacing the resolver, never by modifying it
image_resolver = None


def load_image_resolver(path = None):
    """
    Loads the image configuration and replaces the image resolver with one that uses it.
    """
    global image_resolver
    config = images.parse_image_config(path or settings.image_config_path)
    image_resolver = images.ImageResolver(config)
    return image_resolver


@kopf.on.startup()
async def apply_settings(**kwargs):
    """
    Apply kopf settings and initialise the clients and image configuration.
    """
    global ekclient
    kopf_settings = kwargs["settings"]
    kopf_settings.persistence.finalizer = f"{settings.annotation_prefix}/finalizer"
    kopf_settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix = settings.annotation_prefix
    )
    kopf_settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix = settings.annotation_prefix,
        key = "last-handled-configuration",
    )
    kopf_settings.watching.client_timeout = settings.watch_timeout
    # Create an easykube client from the environment
    ekclient = (
        Configuration
            .from_environment()
            .async_client(default_field_manager = settings.easykube_field_manager)
    )
    # The operator cannot resolve images without the image configuration
    try:
        load_image_resolver()
    except images.ConfigError:
        logger.exception("error loading image configuration - exiting")
        sys.exit(1)


@kopf.on.cleanup()
async def on_cleanup(**kwargs):
    """
    Runs on operator shutdown.
    """
    if ekclient is not None:
        await ekclient.aclose()


def instance_handler(model, register_fn, /, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model and passes
    the validated instance to it.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"
    def decorator(func):
        @functools.wraps(func)
        async def handler(**handler_kwargs):
            if "instance" not in handler_kwargs:
                handler_kwargs["instance"] = model.model_validate(handler_kwargs["body"])
            return await func(**handler_kwargs)
        return register_fn(api_version, model._meta.plural_name, **kwargs)(handler)
    return decorator


@instance_handler(api.CassandraDatacenter, kopf.on.create)
@instance_handler(api.CassandraDatacenter, kopf.on.update, field = "spec")
@instance_handler(api.CassandraDatacenter, kopf.on.resume)
async def reconcile_datacenter(instance, logger, **kwargs):
    """
    Runs a reconcile pass for a datacenter when it is created, when its spec changes
    and when the operator is resumed.
    """
    ctx = reconcile.ReconciliationContext(
        ekclient,
        instance,
        image_resolver,
        logger = logger
    )
    result = await run_pipeline(ctx, reconcile.RECONCILE_STEPS)
    if result.is_error:
        # There is no point retrying an unsupported version until the spec changes
        if isinstance(result.cause, images.UnsupportedVersionError):
            raise kopf.PermanentError(str(result.cause))
        else:
            raise kopf.TemporaryError(
                str(result.cause),
                delay = settings.reconcile.retry_delay
            )
