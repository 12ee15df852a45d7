import logging

import requests

from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class LoggingRetry(Retry):
    def __init__(
        self,
        **kwargs,
    ):
        defaults = dict(
            total=3,
            connect=3,
            read=3,
            status=3,
            redirect=False,
            status_forcelist=(429, 500, 502, 503, 504),
            raise_on_status=False,
            respect_retry_after_header=True,
            backoff_factor=1.0,
        )

        super().__init__(**(defaults | kwargs))

    def increment(self,
        method=None,
        url=None,
        response=None,
        error=None,
        _pool=None,
        _stacktrace=None
    ):
        # super().increment will either raise an exception indicating that no retry is to
        # be performed or return a new, modified instance of this class
        retry = super().increment(method, url, response, error, _pool, _stacktrace)
        # Use the Retry history to determine the number of retries.
        num_retries = len(self.history) if self.history else 0
        logger.warning(
            f'{method=} {url=} returned {response=} {error=} {num_retries=} - trying again'
        )
        return retry


_default_retry_cfg = LoggingRetry()


def mount_default_adapter(
    session: requests.Session,
    connection_pool_cache_size=32, # requests-library default
    max_pool_size=32, # requests-library default
    retry_cfg: Retry=_default_retry_cfg,
):
    '''
    mounts an adapter that retries transient errors (connection errors, and responses w/
    status-codes from `LoggingRetry.status_forcelist`) w/ exponential backoff.

    max_pool_size should be at least as large as the number of threads sharing the session.
    '''
    default_http_adapter = HTTPAdapter(
        pool_connections=connection_pool_cache_size,
        pool_maxsize=max_pool_size,
        max_retries=retry_cfg,
    )
    session.mount('http://', default_http_adapter)
    session.mount('https://', default_http_adapter)

    return session
