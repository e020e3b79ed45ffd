# biodiversity.py: GBIF / Nominatim / eBird / iNaturalist
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

GBIF_API = "https://api.gbif.org/v1"
NOMINATIM_API = "https://nominatim.openstreetmap.org/search"
EBIRD_API = "https://api.ebird.org/v2"
INATURALIST_API = "https://api.inaturalist.org/v1"

EBIRD_TAXONOMY_TTL = 24 * 60 * 60
_COORDS_RX = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")
_TITLE_RX = re.compile(r"<title[^>]*>([^<]+)</title>", re.I)
_ERROR_TITLES = (
    "page not found", "404", "not found", "does not exist", "no results",
    "species not found", "we couldn't find", "no matching", "error page",
)

# Сетевые ошибки, после которых коллаборатор просто возвращает «нет данных»
NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError, TypeError)


@dataclass
class GeoPoint:
    lat: float
    lng: float
    label: str


@dataclass
class SpeciesMatch:
    key: int
    scientific_name: str
    canonical_name: str
    rank: Optional[str] = None
    status: Optional[str] = None
    confidence: Optional[int] = None
    is_synonym: bool = False
    accepted_name: Optional[str] = None
    kingdom: Optional[str] = None
    phylum: Optional[str] = None
    class_: Optional[str] = None
    order: Optional[str] = None
    family: Optional[str] = None
    genus: Optional[str] = None
    species: Optional[str] = None


@dataclass
class Occurrences:
    count: int
    has_records: bool
    recent: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class GbifVerification:
    verified: bool = False
    matches: bool = False
    classifier_name: Optional[str] = None
    gbif_name: Optional[str] = None
    species: Optional[SpeciesMatch] = None
    subspecies: List[Dict[str, Any]] = field(default_factory=list)
    location_verified: bool = False
    occurrences: Optional[Occurrences] = None


@dataclass
class EBirdTaxon:
    species_code: str
    common_name: str
    scientific_name: str

    @property
    def url(self) -> str:
        return f"https://ebird.org/species/{self.species_code}"


@dataclass
class ReferencePhoto:
    found: bool
    photo_url: Optional[str] = None
    source_id: Optional[int] = None
    source_name: Optional[str] = None

    @property
    def page_url(self) -> Optional[str]:
        if not self.found or self.source_id is None:
            return None
        return f"https://www.inaturalist.org/taxa/{self.source_id}-{(self.source_name or '').replace(' ', '-')}"


def binomial(name: str) -> str:
    return " ".join(name.split()[:2])


def parse_coordinates(text: str) -> Optional[GeoPoint]:
    match = _COORDS_RX.match(text or "")
    if not match:
        return None
    lat, lng = float(match.group(1)), float(match.group(2))
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return GeoPoint(lat=lat, lng=lng, label=text.strip())


def wikipedia_url(scientific_name: str) -> str:
    return f"https://en.wikipedia.org/wiki/{binomial(scientific_name).replace(' ', '_')}"


class BiodiversityClient:
    """Best-effort REST lookups; every public method returns an empty value on failure."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        user_agent: str = "WildlifeIDBot/1.0",
        ebird_api_key: Optional[str] = None,
        timeout: float = 15.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._session = session
        self._headers = {"User-Agent": user_agent}
        self._ebird_key = ebird_api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._clock = clock or time.monotonic
        self._ebird_taxonomy: Optional[List[Dict[str, Any]]] = None
        self._ebird_loaded_at = 0.0

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> Any:
        async with self._session.get(
            url, params=params, headers={**self._headers, **(headers or {})}, timeout=self._timeout
        ) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history, status=resp.status, message=body[:200]
                )
            return await resp.json(content_type=None)

    # =========================
    #   Геокодирование
    # =========================
    async def geocode(self, location: str) -> Optional[GeoPoint]:
        point = parse_coordinates(location)
        if point:
            return point
        try:
            data = await self._get_json(NOMINATIM_API, {"q": location, "format": "json", "limit": 1})
        except NETWORK_ERRORS as e:
            logger.error(f"[geocode] {location!r}: {e}")
            return None
        if not data:
            return None
        top = data[0]
        return GeoPoint(lat=float(top["lat"]), lng=float(top["lon"]), label=top.get("display_name", location))

    # =========================
    #   GBIF
    # =========================
    async def lookup_species(self, scientific_name: str) -> Optional[SpeciesMatch]:
        try:
            data = await self._get_json(
                f"{GBIF_API}/species/match", {"name": binomial(scientific_name), "verbose": "true"}
            )
        except NETWORK_ERRORS as e:
            logger.error(f"[gbif] species lookup {scientific_name!r}: {e}")
            return None
        if not data.get("usageKey"):
            return None
        status = data.get("status")
        is_synonym = bool(data.get("synonym")) or status == "SYNONYM"
        return SpeciesMatch(
            key=data["usageKey"],
            scientific_name=data.get("scientificName", ""),
            canonical_name=data.get("canonicalName", ""),
            rank=data.get("rank"),
            status=status,
            confidence=data.get("confidence"),
            is_synonym=is_synonym,
            accepted_name=data.get("species") if is_synonym else None,
            kingdom=data.get("kingdom"),
            phylum=data.get("phylum"),
            class_=data.get("class"),
            order=data.get("order"),
            family=data.get("family"),
            genus=data.get("genus"),
            species=data.get("species"),
        )

    async def list_subordinate_taxa(self, key: int) -> List[Dict[str, Any]]:
        try:
            data = await self._get_json(f"{GBIF_API}/species/{key}/children", {"limit": 100})
        except NETWORK_ERRORS as e:
            logger.error(f"[gbif] children of {key}: {e}")
            return []
        return [
            {
                "name": r.get("canonicalName") or r.get("scientificName"),
                "rank": r.get("rank"),
                "key": r.get("key"),
                "status": r.get("taxonomicStatus"),
            }
            for r in data.get("results", [])
            if r.get("rank") in ("SUBSPECIES", "VARIETY")
        ]

    async def check_occurrence(self, key: int, point: GeoPoint) -> Optional[Occurrences]:
        # ±1° вокруг точки, примерно 100 км
        params = {
            "taxonKey": key,
            "decimalLatitude": f"{point.lat - 1},{point.lat + 1}",
            "decimalLongitude": f"{point.lng - 1},{point.lng + 1}",
            "limit": 100,
        }
        try:
            data = await self._get_json(f"{GBIF_API}/occurrence/search", params)
        except NETWORK_ERRORS as e:
            logger.error(f"[gbif] occurrences of {key}: {e}")
            return None
        count = int(data.get("count") or 0)
        recent = [
            {
                "date": r.get("eventDate"),
                "country": r.get("country"),
                "locality": r.get("locality"),
                "recorded_by": r.get("recordedBy"),
            }
            for r in (data.get("results") or [])[:5]
        ]
        return Occurrences(count=count, has_records=count > 0, recent=recent)

    async def verify_with_gbif(self, scientific_name: str, location: Optional[str] = None) -> GbifVerification:
        result = GbifVerification(classifier_name=scientific_name)
        species = await self.lookup_species(scientific_name)
        if species is None:
            logger.info(f"[gbif] {scientific_name!r} not found")
            return result

        result.verified = True
        result.species = species
        result.gbif_name = species.canonical_name
        result.matches = binomial(scientific_name).lower() == binomial(species.canonical_name or "").lower()
        if not result.matches:
            logger.info(f"[gbif] name mismatch: classifier={scientific_name!r} gbif={species.canonical_name!r}")

        result.subspecies = await self.list_subordinate_taxa(species.key)

        if location:
            point = await self.geocode(location)
            if point:
                result.occurrences = await self.check_occurrence(species.key, point)
                result.location_verified = bool(result.occurrences and result.occurrences.has_records)
        return result

    # =========================
    #   eBird
    # =========================
    async def _ebird_taxonomy_list(self) -> Optional[List[Dict[str, Any]]]:
        if not self._ebird_key:
            return None
        now = self._clock()
        if self._ebird_taxonomy is not None and now - self._ebird_loaded_at < EBIRD_TAXONOMY_TTL:
            return self._ebird_taxonomy
        try:
            data = await self._get_json(
                f"{EBIRD_API}/ref/taxonomy/ebird", {"fmt": "json"}, headers={"X-eBirdApiToken": self._ebird_key}
            )
        except NETWORK_ERRORS as e:
            logger.error(f"[ebird] taxonomy download failed: {e}")
            return self._ebird_taxonomy
        self._ebird_taxonomy = data
        self._ebird_loaded_at = now
        logger.info(f"[ebird] cached {len(data)} taxa")
        return data

    async def ebird_lookup(self, scientific_name: str, common_name: Optional[str] = None) -> Optional[EBirdTaxon]:
        taxonomy = await self._ebird_taxonomy_list()
        if not taxonomy:
            return None
        wanted = binomial(scientific_name).lower()
        by_common = None
        for bird in taxonomy:
            if binomial(bird.get("sciName", "")).lower() == wanted:
                return EBirdTaxon(bird["speciesCode"], bird.get("comName", ""), bird.get("sciName", ""))
            if common_name and by_common is None and bird.get("comName", "").lower() == common_name.lower():
                by_common = bird
        if by_common is not None:
            # Научное имя устарело, но английское совпало: eBird знает новое
            return EBirdTaxon(by_common["speciesCode"], by_common.get("comName", ""), by_common.get("sciName", ""))
        return None

    # =========================
    #   iNaturalist
    # =========================
    async def find_reference_photo(self, scientific_name: str) -> ReferencePhoto:
        name = binomial(scientific_name)
        try:
            data = await self._get_json(f"{INATURALIST_API}/taxa", {"q": name, "per_page": 20})
        except NETWORK_ERRORS as e:
            logger.error(f"[inat] {name!r}: {e}")
            return ReferencePhoto(found=False)

        results = [t for t in data.get("results", []) if t.get("default_photo")]
        genus = name.split()[0].lower() if name else ""
        exact = [t for t in results if binomial(t.get("name", "")).lower() == name.lower()]
        same_genus = [t for t in results if (t.get("name", "").split() or [""])[0].lower() == genus]
        for taxon in exact + same_genus:
            photo = taxon["default_photo"]
            url = photo.get("medium_url") or photo.get("small_url") or photo.get("square_url")
            if not url:
                continue
            url = url.replace("square", "medium").replace("small", "medium")
            logger.info(f"[inat] photo found: {taxon.get('name')}")
            return ReferencePhoto(found=True, photo_url=url, source_id=taxon.get("id"), source_name=taxon.get("name"))
        return ReferencePhoto(found=False)

    async def fetch_bytes(self, url: str) -> Optional[bytes]:
        try:
            async with self._session.get(url, headers=self._headers, timeout=self._timeout) as resp:
                if resp.status != 200:
                    logger.error(f"[fetch] {url}: status {resp.status}")
                    return None
                return await resp.read()
        except NETWORK_ERRORS as e:
            logger.error(f"[fetch] {url}: {e}")
            return None

    # =========================
    #   Проверка ссылок
    # =========================
    async def is_valid_url(self, url: str, timeout: float = 5.0) -> bool:
        try:
            async with self._session.get(
                url, headers=self._headers, timeout=aiohttp.ClientTimeout(total=timeout), allow_redirects=True
            ) as resp:
                if resp.status >= 400:
                    return False
                html = (await resp.text(errors="ignore")).lower()
                final_url = str(resp.url)
        except NETWORK_ERRORS as e:
            logger.info(f"[links] check failed for {url}: {e}")
            return False

        match = _TITLE_RX.search(html)
        title = match.group(1) if match else ""
        if any(marker in title for marker in _ERROR_TITLES):
            return False
        if "wikipedia.org" in url and (
            "search" in final_url or "wikipedia does not have an article" in html
        ):
            return False
        if "ebird.org/species" in url and ("species not found" in html or "no results" in html):
            return False
        return True
