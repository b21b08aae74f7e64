"""
Source client - fetches list pages and detail records from resource sites
"""
from typing import Any, Dict, Optional

from ..config import settings
from ..errors import SourcePayloadError, SourceUnavailable
from ..logging_config import setup_logging
from ..models import SourceConfig
from .core import RETRYABLE_ERRORS, RetryPolicy, SourceSession, call_with_retry
from .dialects import PageResult, RawRecord, get_dialect

logger = setup_logging(__name__)


class SourceClient:
    """Dialect-aware client for the list+detail APIs of resource sites"""

    def __init__(
        self,
        session: Optional[SourceSession] = None,
        policy: Optional[RetryPolicy] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.config = config or settings.get_scraper_config()
        self.policy = policy or RetryPolicy(
            max_retries=self.config["max_retries"],
            backoff=self.config["backoff"],
        )
        self._owns_session = session is None
        self.session = session or SourceSession(user_agent=self.config["user_agent"])

    async def __aenter__(self):
        await self.session.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_session:
            await self.session.close()

    async def _get(self, source: SourceConfig, params: Dict[str, Any], timeout: float, what: str) -> str:
        try:
            return await call_with_retry(
                lambda: self.session.get_text(source.url, params, timeout),
                self.policy,
                description=f"{source.name} {what}",
            )
        except RETRYABLE_ERRORS as e:
            status = getattr(e, "status", None)
            raise SourceUnavailable(
                source.name,
                f"{what} failed after {self.policy.attempts} attempts: {e!r}",
                status=status,
            ) from e

    async def fetch_list_page(
        self,
        source: SourceConfig,
        category: Optional[int],
        page: int,
    ) -> PageResult:
        """
        Fetch one list page

        Returns:
            PageResult with the page's records and has_more

        Raises:
            SourceUnavailable: the site failed every attempt
            SourcePayloadError: the site answered with something unparseable
        """
        dialect = get_dialect(source.source_type)
        params = dialect.list_params(category, page, self.config["page_size"])
        timeout = source.timeout or self.config["list_timeout"]

        body = await self._get(source, params, timeout, f"list page {page}")
        result = dialect.parse(body, source.name, source.response_format)
        logger.debug(
            f"{source.name} page {page}/{result.page_count}: {len(result.records)} records",
            extra={"source_id": source.name}
        )
        return result

    async def fetch_detail(self, source: SourceConfig, external_id: str) -> Optional[RawRecord]:
        """
        Fetch the full record for one title

        Returns:
            The record, or None when the site does not know the id
        """
        dialect = get_dialect(source.source_type)
        params = dialect.detail_params(external_id)
        timeout = source.timeout or self.config["detail_timeout"]

        body = await self._get(source, params, timeout, f"detail {external_id}")
        result = dialect.parse(body, source.name, source.response_format)
        if not result.records:
            return None

        for record in result.records:
            if record.external_id == str(external_id):
                return record
        return result.records[0]


__all__ = ["SourceClient", "SourcePayloadError", "SourceUnavailable"]
