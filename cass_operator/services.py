"""
Builders for the services that the operator manages for a datacenter.

Every builder is a pure function of the datacenter, so that repeated builds
for an unchanged datacenter produce identical services with identical hashes.
"""

from .config import settings
from .models.v1beta1 import ServerType
from .utils import add_hash_annotation, cleanup_for_kubernetes, mergeconcat


#: The default ports used by the database server and its sidecars
NATIVE_PORT = 9042
TLS_NATIVE_PORT = 9142
MGMT_API_PORT = 8080
PROMETHEUS_PORT = 9103
THRIFT_PORT = 9160


def cluster_name(datacenter):
    return cleanup_for_kubernetes(datacenter.spec.cluster_name)


def datacenter_name(datacenter):
    return cleanup_for_kubernetes(datacenter.metadata.name)


def cluster_labels(datacenter):
    """
    Returns the labels that identify all the pods of the datacenter's cluster.
    """
    return {f"{settings.annotation_prefix}/cluster": cluster_name(datacenter)}


def datacenter_labels(datacenter):
    """
    Returns the labels that identify the pods of the datacenter.
    """
    labels = cluster_labels(datacenter)
    labels[f"{settings.annotation_prefix}/datacenter"] = datacenter.metadata.name
    return labels


def operator_labels(datacenter):
    """
    Returns the common labels for resources created by the operator.
    """
    return {
        "app.kubernetes.io/name": "cassandra",
        "app.kubernetes.io/instance": f"cassandra-{cluster_name(datacenter)}",
        "app.kubernetes.io/version": datacenter.spec.server_version,
        "app.kubernetes.io/managed-by": "cass-operator",
        "app.kubernetes.io/created-by": "cass-operator",
    }


def named_port(name, port, node_port = None):
    service_port = {"name": name, "port": port, "targetPort": port}
    if node_port is not None:
        service_port["nodePort"] = node_port
    return service_port


def dc_service_name(datacenter):
    return f"{cluster_name(datacenter)}-{datacenter_name(datacenter)}-service"


def seed_service_name(datacenter):
    # The seed service is shared by all the datacenters in the cluster
    return f"{cluster_name(datacenter)}-seed-service"


def all_pods_service_name(datacenter):
    return f"{cluster_name(datacenter)}-{datacenter_name(datacenter)}-all-pods-service"


def additional_seed_service_name(datacenter):
    return (
        f"{cluster_name(datacenter)}-"
        f"{datacenter_name(datacenter)}-"
        "additional-seed-service"
    )


def node_port_service_name(datacenter):
    return f"{cluster_name(datacenter)}-{datacenter_name(datacenter)}-node-port-service"


def _service(datacenter, name, labels, spec, additions):
    """
    Returns a service with the given labels and spec, including the additional
    labels and annotations from the datacenter, with the hash annotation applied.
    """
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": datacenter.metadata.namespace,
            # Labels managed by the operator take precedence
            "labels": mergeconcat(dict(additions.additional_labels), labels),
        },
        "spec": spec,
    }
    if additions.additional_annotations:
        service["metadata"]["annotations"] = dict(additions.additional_annotations)
    return add_hash_annotation(service)


def _headless_spec(datacenter, **extra):
    spec = {
        "type": "ClusterIP",
        "clusterIP": "None",
        "selector": datacenter_labels(datacenter),
    }
    spec.update(extra)
    return spec


def dc_service(datacenter):
    """
    Returns the client-facing service for the datacenter.
    """
    if datacenter.spec.is_node_port_enabled():
        native_port = datacenter.spec.networking.node_port.native
    else:
        native_port = NATIVE_PORT
    ports = [
        named_port("native", native_port),
        named_port("tls-native", TLS_NATIVE_PORT),
        named_port("mgmt-api", MGMT_API_PORT),
        named_port("prometheus", PROMETHEUS_PORT),
    ]
    if datacenter.spec.server_type == ServerType.DSE:
        ports.append(named_port("thrift", THRIFT_PORT))
    return _service(
        datacenter,
        dc_service_name(datacenter),
        {**datacenter_labels(datacenter), **operator_labels(datacenter)},
        _headless_spec(datacenter, ports = ports),
        datacenter.spec.additional_service_config.dc_service,
    )


def seed_service(datacenter):
    """
    Returns the service that resolves to the seed pods of the whole cluster.
    """
    selector = cluster_labels(datacenter)
    selector[f"{settings.annotation_prefix}/seed-node"] = "true"
    return _service(
        datacenter,
        seed_service_name(datacenter),
        {**cluster_labels(datacenter), **operator_labels(datacenter)},
        _headless_spec(
            datacenter,
            selector = selector,
            publishNotReadyAddresses = True,
        ),
        datacenter.spec.additional_service_config.seed_service,
    )


def all_pods_service(datacenter):
    """
    Returns the service that resolves to every pod in the datacenter, including
    pods that are not ready yet.
    """
    return _service(
        datacenter,
        all_pods_service_name(datacenter),
        {**datacenter_labels(datacenter), **operator_labels(datacenter)},
        _headless_spec(
            datacenter,
            publishNotReadyAddresses = True,
            ports = [
                named_port("native", NATIVE_PORT),
                named_port("mgmt-api", MGMT_API_PORT),
                named_port("prometheus", PROMETHEUS_PORT),
            ],
        ),
        datacenter.spec.additional_service_config.all_pods_service,
    )


def additional_seed_service(datacenter):
    """
    Returns the service that exposes seeds from outside the cluster.

    The service has no selector, as its endpoints are the additional seeds.
    """
    return _service(
        datacenter,
        additional_seed_service_name(datacenter),
        {**datacenter_labels(datacenter), **operator_labels(datacenter)},
        {
            "type": "ClusterIP",
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
        },
        datacenter.spec.additional_service_config.additional_seed_service,
    )


def node_port_service(datacenter):
    """
    Returns the service that exposes the datacenter on the ports of each node.
    """
    node_port = datacenter.spec.networking.node_port
    # No cluster IP is given as it is allocated by the platform
    return _service(
        datacenter,
        node_port_service_name(datacenter),
        {**datacenter_labels(datacenter), **operator_labels(datacenter)},
        {
            "type": "NodePort",
            "selector": datacenter_labels(datacenter),
            "externalTrafficPolicy": "Local",
            "ports": [
                # Port names cannot be more than 15 characters
                named_port("internode", node_port.internode, node_port.internode),
                named_port("native", node_port.native, node_port.native),
            ],
        },
        datacenter.spec.additional_service_config.node_port_service,
    )


def build_services(datacenter):
    """
    Returns the services that should exist for the datacenter, in a fixed order.
    """
    services = [
        dc_service(datacenter),
        seed_service(datacenter),
        all_pods_service(datacenter),
    ]
    if datacenter.spec.additional_seeds:
        services.append(additional_seed_service(datacenter))
    if datacenter.spec.is_node_port_enabled():
        services.append(node_port_service(datacenter))
    return services
