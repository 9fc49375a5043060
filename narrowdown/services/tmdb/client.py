from typing import Any

from narrowdown.core.base_client import BaseClient

TMDB_API_BASE_URL = "https://api.themoviedb.org/3"


class TMDBClient(BaseClient):
    """
    Client for interacting with the TMDB API.
    """

    def __init__(
        self,
        api_key: str,
        language: str = "en-US",
        timeout: float = 10.0,
        max_retries: int = 3,
        transport: Any = None,
    ):
        super().__init__(base_url=TMDB_API_BASE_URL, timeout=timeout, max_retries=max_retries, transport=transport)
        self.api_key = api_key
        self.language = language

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """Override request to always include API key and language."""
        params = kwargs.get("params", {})
        if params is None:
            params = {}
        params = dict(params)
        params["api_key"] = self.api_key
        params.setdefault("language", self.language)
        kwargs["params"] = params
        return await super()._request(method, url, **kwargs)
