"""Rotación de headers y pausas de cortesía entre requests."""
import random
import time
from typing import Callable, Dict, Optional
from fake_useragent import UserAgent


class HeaderRotator:
    """Headers del scraper; opcionalmente rota el User-Agent."""

    def __init__(self, user_agent: str, rotate: bool = False):
        self.user_agent = user_agent
        self.ua = UserAgent() if rotate else None

        # Headers base realistas
        self.base_headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "et-EE,et;q=0.9,en;q=0.8",
            "Connection": "keep-alive",
        }

    def get_headers(self) -> Dict[str, str]:
        headers = self.base_headers.copy()
        headers["User-Agent"] = self.ua.random if self.ua else self.user_agent
        return headers


class PolitenessDelay:
    """Pausa aleatoria dentro de [min, max] segundos entre páginas."""

    def __init__(
        self,
        min_seconds: float,
        max_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_seconds < min_seconds:
            raise ValueError("max_seconds must be >= min_seconds")
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self._sleep = sleep
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        return self._rng.uniform(self.min_seconds, self.max_seconds)

    def wait(self) -> float:
        """Esperar y retornar los segundos dormidos."""
        delay = self.next_delay()
        self._sleep(delay)
        return delay
