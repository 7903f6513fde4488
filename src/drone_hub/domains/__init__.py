from __future__ import annotations

from drone_hub.domains.groups_domain import GroupsDomain
from drone_hub.domains.lifecycle_domain import LifecycleDomain
from drone_hub.domains.preview_domain import PortReachabilityTracker, PreviewDomain
from drone_hub.domains.repo_domain import RepoDomain
from drone_hub.domains.saga import commit_or_compensate

__all__ = [
    "GroupsDomain",
    "LifecycleDomain",
    "PortReachabilityTracker",
    "PreviewDomain",
    "RepoDomain",
    "commit_or_compensate",
]
