import base64
import copy
import functools
import hashlib
import json
import re

from .config import settings


#: Regex matching the characters that are not permitted in Kubernetes names
INVALID_NAME_CHARS_REGEX = r"[^a-z0-9-]+"


def resource_hash_annotation():
    """
    Returns the annotation that stores the hash of a resource's desired content.
    """
    return f"{settings.annotation_prefix}/resource-hash"


def cleanup_for_kubernetes(value):
    """
    Returns the given value lowercased with characters that are not valid in a
    Kubernetes resource name removed.
    """
    return re.sub(INVALID_NAME_CHARS_REGEX, "", value.lower())


def resource_hash(obj):
    """
    Returns the canonical hash of the given resource.

    Any existing hash annotation is not included in the hash.
    """
    obj = copy.deepcopy(obj)
    metadata = obj.get("metadata", {})
    annotations = metadata.get("annotations")
    if annotations is not None:
        annotations.pop(resource_hash_annotation(), None)
        # An object whose only annotation is the hash hashes as if it had none
        if not annotations:
            del metadata["annotations"]
    content = json.dumps(obj, sort_keys = True, separators = (",", ":"))
    digest = hashlib.sha256(content.encode()).digest()
    return base64.b64encode(digest).decode()


def add_hash_annotation(obj):
    """
    Stores the canonical hash of the given resource in its annotations and
    returns the resource.
    """
    obj_hash = resource_hash(obj)
    metadata = obj.setdefault("metadata", {})
    metadata.setdefault("annotations", {})[resource_hash_annotation()] = obj_hash
    return obj


def resources_have_same_hash(current, desired):
    """
    Returns true if the stored hashes of the two resources are equal.

    A resource without a stored hash never matches.
    """
    annotation = resource_hash_annotation()
    current_hash = (current.get("metadata", {}).get("annotations") or {}).get(annotation)
    desired_hash = (desired.get("metadata", {}).get("annotations") or {}).get(annotation)
    return current_hash is not None and current_hash == desired_hash


def mergeconcat(defaults, *overrides):
    """
    Returns a new dictionary obtained by deep-merging multiple sets of overrides
    into defaults, with precedence from right to left.
    """
    def mergeconcat2(defaults, overrides):
        if isinstance(defaults, dict) and isinstance(overrides, dict):
            merged = dict(defaults)
            for key, value in overrides.items():
                if key in defaults:
                    merged[key] = mergeconcat2(defaults[key], value)
                else:
                    merged[key] = value
            return merged
        elif isinstance(defaults, (list, tuple)) and isinstance(overrides, (list, tuple)):
            merged = list(defaults)
            merged.extend(overrides)
            return merged
        else:
            return overrides if overrides is not None else defaults
    return functools.reduce(mergeconcat2, overrides, defaults)
