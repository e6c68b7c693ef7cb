"""Clients for the Autodesk Platform Services job pipeline.

Public API
----------
.. autoclass:: ApsTransport
.. autoclass:: CredentialProvider
.. autoclass:: ObjectStoreClient
.. autoclass:: JobSubmitter
.. autoclass:: JobPoller
.. autoclass:: PollSettings
.. autoclass:: ResultFetcher
"""

from rvtmeta.aps.auth import CredentialProvider
from rvtmeta.aps.fetcher import ResultFetcher
from rvtmeta.aps.fsm import JobLifecycleSM, create_fsm
from rvtmeta.aps.jobs import JobSubmitter
from rvtmeta.aps.poller import JobPoller, PollSettings, classify_manifest
from rvtmeta.aps.storage import ObjectStoreClient
from rvtmeta.aps.transport import ApsTransport

__all__ = [
    "ApsTransport",
    "CredentialProvider",
    "JobLifecycleSM",
    "JobPoller",
    "JobSubmitter",
    "ObjectStoreClient",
    "PollSettings",
    "ResultFetcher",
    "classify_manifest",
    "create_fsm",
]
