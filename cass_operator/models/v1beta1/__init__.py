from .datacenter import (
    CassandraDatacenter,
    CassandraDatacenterSpec,
    CassandraDatacenterStatus,
    NetworkingSpec,
    NodePortSpec,
    ProgressState,
    ServerType,
    ServiceConfig,
    ServiceConfigAdditions,
)
