"""Weather (Open-Meteo) and football (TheSportsDB) lookups used to enrich the prompt.

Lookups are optional: any failure is logged and the prompt goes out without
the live-data block.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from app.utils.logger import LOGGER_NAME, log_json


logger = logging.getLogger(LOGGER_NAME)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
SPORTS_BASE_URL = "https://www.thesportsdb.com/api/v1/json"
MAX_EVENTS = 3

# WMO weather interpretation codes
WEATHER_CODES: Dict[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snow fall",
    73: "Moderate snow fall",
    75: "Heavy snow fall",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}

_NAME_CHARS = r"A-Za-zÀ-ɏ؀-ۿ'\-. "
_WEATHER_PATTERN = re.compile(
    rf"\b(?:weather|temperature|forecast)\b.*?\b(?:in|for|at)\s+([{_NAME_CHARS}]+)",
    re.IGNORECASE,
)
_TEAM_PATTERNS = (
    re.compile(rf"\b(?:scores?|results?|match(?:es)?|games?|fixtures?)\b.*?\b(?:of|for)\s+([{_NAME_CHARS}]+)", re.IGNORECASE),
    re.compile(rf"\bhow did\s+([{_NAME_CHARS}]+?)\s+(?:do|play|get on)\b", re.IGNORECASE),
)
_TRAILING_WORDS = re.compile(
    r"(?:\s+(?:today|tonight|now|right now|tomorrow|yesterday|last night|this week|last match|last game|match|game))+\s*$",
    re.IGNORECASE,
)


def _clean_name(raw: str) -> Optional[str]:
    name = _TRAILING_WORDS.sub("", raw.strip(" .'-"))
    name = name.strip(" .'-")
    return name or None


def extract_city(text: str) -> Optional[str]:
    """
    从 "weather in Baghdad" 一类问题中提取城市名，没有天气意图时返回 None。
    """
    m = _WEATHER_PATTERN.search(text)
    return _clean_name(m.group(1)) if m else None


def extract_team(text: str) -> Optional[str]:
    """
    从 "latest score for Arsenal" / "how did Barcelona do" 中提取球队名。
    """
    for pattern in _TEAM_PATTERNS:
        m = pattern.search(text)
        if m:
            return _clean_name(m.group(1))
    return None


def describe_weather_code(code: Optional[int]) -> str:
    if code is None:
        return "Unknown conditions"
    return WEATHER_CODES.get(int(code), f"Unknown conditions (code {code})")


class LiveDataService:
    """
    实时数据查询：城市天气与球队最近赛果。

    参数：
        http_client: 共享的 httpx.AsyncClient
        weather_api_key: Open-Meteo 商业 key（可选，免费接口无需）
        sports_api_key: TheSportsDB key，默认免费 key "3"
        enabled: 为 False 时 gather 直接返回 None
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        weather_api_key: str = "",
        sports_api_key: str = "3",
        enabled: bool = True,
    ):
        self._client = http_client or httpx.AsyncClient(timeout=10)
        self.weather_api_key = weather_api_key
        self.sports_api_key = sports_api_key or "3"
        self.enabled = enabled

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._client.get(url, params=params)
        resp.raise_for_status()
        data = resp.json()
        return data if isinstance(data, dict) else {}

    async def geocode(self, city: str) -> Optional[Dict[str, Any]]:
        params: Dict[str, Any] = {"name": city, "count": 1, "language": "en", "format": "json"}
        if self.weather_api_key:
            params["apikey"] = self.weather_api_key
        results = (await self._get_json(GEOCODING_URL, params)).get("results") or []
        return results[0] if results else None

    async def weather(self, city: str) -> Optional[str]:
        place = await self.geocode(city)
        if not place:
            return None
        params: Dict[str, Any] = {
            "latitude": place["latitude"],
            "longitude": place["longitude"],
            "current_weather": "true",
            "timezone": "auto",
        }
        if self.weather_api_key:
            params["apikey"] = self.weather_api_key
        current = (await self._get_json(FORECAST_URL, params)).get("current_weather")
        if not current:
            return None
        label = ", ".join(p for p in (place.get("name"), place.get("admin1"), place.get("country")) if p)
        return (
            f"Current weather in {label}: {describe_weather_code(current.get('weathercode'))}, "
            f"{current.get('temperature')}°C, wind {current.get('windspeed')} km/h "
            f"(observed {current.get('time')})."
        )

    async def search_team(self, name: str) -> Optional[Dict[str, Any]]:
        url = f"{SPORTS_BASE_URL}/{self.sports_api_key}/searchteams.php"
        teams = (await self._get_json(url, {"t": name})).get("teams") or []
        soccer = [t for t in teams if (t.get("strSport") or "Soccer") == "Soccer"]
        return (soccer or teams or [None])[0]

    async def latest_results(self, team_name: str) -> Optional[str]:
        team = await self.search_team(team_name)
        if not team:
            return None
        url = f"{SPORTS_BASE_URL}/{self.sports_api_key}/eventslast.php"
        events: List[Dict[str, Any]] = (await self._get_json(url, {"id": team["idTeam"]})).get("results") or []
        if not events:
            return None
        lines = [f"Latest results for {team.get('strTeam', team_name)}:"]
        for ev in events[:MAX_EVENTS]:
            lines.append(
                f"- {ev.get('dateEvent')}: {ev.get('strHomeTeam')} {ev.get('intHomeScore')} - "
                f"{ev.get('intAwayScore')} {ev.get('strAwayTeam')} ({ev.get('strLeague')})"
            )
        return "\n".join(lines)

    async def _safe(self, kind: str, query: str, coro) -> Optional[str]:
        try:
            return await coro
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            log_json(logger, logging.WARNING, "live_data.lookup.failed", kind=kind, query=query, error=str(e))
            return None

    async def gather(self, text: str) -> Optional[str]:
        """
        根据用户文本判断是否需要实时数据，并发查询后拼成纯文本块。

        输出：
            Optional[str]：无意图或全部查询失败时为 None。
        """
        if not self.enabled:
            return None
        lookups = []
        city = extract_city(text)
        if city:
            lookups.append(self._safe("weather", city, self.weather(city)))
        team = extract_team(text)
        if team:
            lookups.append(self._safe("sports", team, self.latest_results(team)))
        if not lookups:
            return None
        blocks = [b for b in await asyncio.gather(*lookups) if b]
        if blocks:
            log_json(logger, logging.INFO, "live_data.fetched", city=city, team=team, blocks=len(blocks))
        return "\n\n".join(blocks) or None

    async def aclose(self) -> None:
        await self._client.aclose()
