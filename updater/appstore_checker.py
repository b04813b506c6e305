"""App Store update checks against the iTunes lookup API."""

import locale
import logging

import httpx
from pydantic import BaseModel, ValidationError

from .bundles import is_app_store_app
from .concurrency import gather_chunked
from .errors import LookupDecodeError
from .models import InstalledApp, UpdateableApp, UpdateSource
from .versioning import is_store_version_newer

logger = logging.getLogger(__name__)

LOOKUP_URL = "https://itunes.apple.com/lookup"
FALLBACK_REGIONS = ("CN", "US", "HK", "JP", "KR", "SG")
ENTITIES = ("desktopSoftware", "macSoftware", "software")


class LookupResult(BaseModel):
    trackId: int
    version: str
    trackViewUrl: str
    trackName: str | None = None
    artistName: str | None = None
    releaseNotes: str | None = None
    currentVersionReleaseDate: str | None = None


class LookupResponse(BaseModel):
    resultCount: int
    results: list[LookupResult]


def current_region() -> str:
    """Two-letter region of the current locale, or "US"."""
    name = locale.getlocale()[0] or ""
    _, _, region = name.partition("_")
    region = region.split(".")[0]
    return region.upper() if len(region) == 2 and region.isalpha() else "US"


class AppStoreChecker:
    """Checks store-installed apps for newer listed versions."""

    def __init__(self, region: str | None = None, timeout: float = 30.0):
        """Initialize the checker.

        Args:
            region: Primary storefront (alpha-2); defaults to the locale's region
            timeout: Request timeout in seconds
        """
        self.region = (region or current_region()).upper()
        self.timeout = timeout
        self._cache: dict[tuple[str, str, str], LookupResult | None] = {}

    @property
    def regions(self) -> list[str]:
        return [self.region] + [r for r in FALLBACK_REGIONS if r != self.region]

    async def check_for_updates(
        self, apps: list[InstalledApp], adam_ids: dict | None = None
    ) -> list[UpdateableApp]:
        """Check apps known to come from the store.

        Args:
            apps: Installed apps
            adam_ids: Product IDs from Spotlight keyed by app path

        Returns:
            Updates for apps whose listed version is newer
        """
        adam_ids = adam_ids or {}
        # Listings are cached for one scan only
        self._cache.clear()
        candidates = [a for a in apps if a.path in adam_ids or is_app_store_app(a.path)]
        if not candidates:
            return []
        logger.info("Checking %d App Store apps (primary region %s)", len(candidates), self.region)
        updates = await gather_chunked(candidates, self.check_app, label="App Store app")
        logger.info("App Store: %d updates", len(updates))
        return updates

    async def check_app(self, app: InstalledApp) -> UpdateableApp | None:
        found = await self.lookup(app.bundle_identifier)
        if found is None:
            logger.debug("%s not found in the App Store", app.bundle_identifier)
            return None
        info, region = found

        if not app.app_version:
            return None
        newer = is_store_version_newer(app.app_version, info.version)
        if newer is None:
            logger.debug(
                "Skipping %s: cannot compare %r with %r", app.app_name, app.app_version, info.version
            )
            return None
        if not newer:
            return None

        logger.debug("Update available: %s %s -> %s", app.app_name, app.app_version, info.version)
        return UpdateableApp(
            app=app,
            source=UpdateSource.APP_STORE,
            available_version=info.version,
            app_store_id=info.trackId,
            app_store_url=info.trackViewUrl,
            found_in_region=region,
            release_description=info.releaseNotes,
            release_date=info.currentVersionReleaseDate,
            is_ios_app=app.is_wrapped,
        )

    async def lookup(self, bundle_id: str) -> tuple[LookupResult, str] | None:
        """Find a listing, trying each region and entity type in order."""
        for region in self.regions:
            for entity in ENTITIES:
                result = await self._lookup_cached(bundle_id, region, entity)
                if result is not None:
                    return result, region
        return None

    async def _lookup_cached(self, bundle_id: str, region: str, entity: str) -> LookupResult | None:
        key = (bundle_id, region, entity)
        if key in self._cache:
            return self._cache[key]
        data = await self._fetch_lookup({
            "bundleId": bundle_id,
            "country": region,
            "limit": "1",
            "entity": entity,
        })
        if data is None:
            # Network failures are retried on the next lookup
            return None
        self._cache[key] = self._decode(data)
        return self._cache[key]

    @staticmethod
    def _decode(data: dict) -> LookupResult | None:
        try:
            response = LookupResponse.model_validate(data)
        except ValidationError as e:
            raise LookupDecodeError(f"Unexpected lookup response: {e}") from e
        return response.results[0] if response.resultCount > 0 and response.results else None

    async def lookup_by_id(self, item_id: int) -> LookupResult | None:
        data = await self._fetch_lookup({"id": str(item_id)})
        return self._decode(data) if data is not None else None

    async def _fetch_lookup(self, params: dict[str, str]) -> dict | None:
        """Query the lookup endpoint.

        Returns:
            Parsed JSON, or None on network or HTTP failure
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(LOOKUP_URL, params=params)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Lookup %s failed: %s", params, e)
            return None
