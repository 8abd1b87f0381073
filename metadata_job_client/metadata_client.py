from typing import Any, Dict, Optional

from loguru import logger

from metadata_job_client.backoff import Sleep
from metadata_job_client.gateway import Gateway
from metadata_job_client.jobs import DeployJob, Job, PathLike
from metadata_job_client.models import StatusPollingConfig


class MetadataClient:
    """Builds jobs for the asynchronous calls of the metadata service.

    Jobs are returned unstarted so callbacks can be registered first.
    """

    def __init__(
        self,
        gateway: Gateway,
        config: Optional[StatusPollingConfig] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.gateway = gateway
        self.config = config or StatusPollingConfig()
        self.logger = logger
        self._sleep = sleep

    def job(self, operation: str, params: Optional[Dict[str, Any]] = None) -> Job:
        """Wraps any operation that answers with an async job id"""
        return Job(
            self.gateway, operation, params, config=self.config, sleep=self._sleep
        )

    def retrieve(self, **options: Any) -> Job:
        self.logger.debug(f"Preparing retrieve with options {sorted(options)}")
        return self.job("retrieve", {"retrieve_request": options})

    def deploy(self, path: PathLike, **options: Any) -> DeployJob:
        self.logger.debug(f"Preparing deploy of {path}")
        return DeployJob(
            self.gateway, path, options, config=self.config, sleep=self._sleep
        )
