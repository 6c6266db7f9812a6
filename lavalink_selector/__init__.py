from .config import DEFAULT_CONFIG
from .coordinator import Coordinator
from .errors import NoCandidates, NoReachableNodes, PersistError, SelectorError, SourceUnavailable
from .models import NodeDescriptor, NodeStats, ProbeErrorKind, ProbeResult, ProbeScanSummary, RankedSelection
from .persister import SelectionPersister
from .policy import SelectionPolicy
from .probe import EndpointProbe, NodeProbe, TcpConnectProbe, build_probe
from .ranking import filter_major_version, rank, top_k
from .scheduler import ProbeScheduler
from .server_list import ServerListSource, parse

__all__ = [
    "DEFAULT_CONFIG",
    "Coordinator",
    "EndpointProbe",
    "NoCandidates",
    "NoReachableNodes",
    "NodeDescriptor",
    "NodeProbe",
    "NodeStats",
    "PersistError",
    "ProbeErrorKind",
    "ProbeResult",
    "ProbeScanSummary",
    "ProbeScheduler",
    "RankedSelection",
    "SelectionPersister",
    "SelectionPolicy",
    "SelectorError",
    "ServerListSource",
    "SourceUnavailable",
    "TcpConnectProbe",
    "build_probe",
    "filter_major_version",
    "parse",
    "rank",
    "top_k",
]
