"""Descarga de páginas de categoría con retry y backoff exponencial."""
import time
from typing import Callable, Optional
from urllib.parse import urljoin

import httpx
from tenacity import (
    RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from pricewatch.config.settings import ScraperConfig
from pricewatch.scrapers.anti_bot.headers import HeaderRotator
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)


class FetchError(Exception):
    """La página no se pudo obtener tras agotar los reintentos."""


class TransientFetchError(Exception):
    """Fallo reintentable (red, 5xx, 429)."""


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        f"Retrying {retry_state.args[0]} in {retry_state.next_action.sleep:.2f}s "
        f"(attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
    )


def build_category_url(base_url: str, slug: str) -> str:
    return urljoin(base_url, f"/tootekategooria/{slug}/")


class PageFetcher:
    """Obtiene HTML crudo vía HTTP."""

    def __init__(
        self,
        config: Optional[ScraperConfig] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or ScraperConfig()
        self.header_rotator = HeaderRotator(self.config.user_agent, self.config.rotate_user_agent)
        self.client = client or httpx.Client(
            timeout=self.config.request_timeout,
            follow_redirects=True,
        )
        self._retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(multiplier=self.config.retry_base_delay, exp_base=2, min=0),
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=_log_retry,
            sleep=sleep,
        )

    def _get_once(self, url: str) -> str:
        try:
            response = self.client.get(url, headers=self.header_rotator.get_headers())
        except httpx.TransportError as e:
            logger.warning(f"Network error fetching {url}: {e}")
            raise TransientFetchError(str(e)) from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"Server returned {response.status_code} for {url}")
            raise TransientFetchError(f"Server returned status {response.status_code}")
        if response.status_code >= 400:
            raise FetchError(f"Request to {url} failed with status {response.status_code}")
        return response.text

    def fetch_page(self, url: str) -> str:
        """Retornar el contenido de la página o lanzar FetchError."""
        try:
            html = self._retrying(self._get_once, url)
        except TransientFetchError as e:
            raise FetchError(
                f"Failed to fetch {url} after {self.config.max_retries + 1} attempts: {e}"
            ) from e
        logger.info(f"Fetched {url} ({len(html)} bytes)")
        return html

    def close(self) -> None:
        self.client.close()
