# Collaborators reached through the tool executor contract
from toolstream.services.content_store import ContentStore, InMemoryContentStore, LocalContentStore
from toolstream.services.deployment_trigger import DeploymentTrigger, HttpDeploymentTrigger, NullDeploymentTrigger
from toolstream.services.package_manifest import PackageManifest
from toolstream.services.search_index import SearchIndex, StoreSearchIndex

__all__ = [
    "ContentStore",
    "InMemoryContentStore",
    "LocalContentStore",
    "DeploymentTrigger",
    "HttpDeploymentTrigger",
    "NullDeploymentTrigger",
    "PackageManifest",
    "SearchIndex",
    "StoreSearchIndex",
]
