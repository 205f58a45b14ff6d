"""WeatherAPI.com tool for Courier.

Current conditions (``days`` = 1) or a forecast of up to 7 days.

Tools:
  weather_api: Fetch current weather or a multi-day forecast
"""
from __future__ import annotations

import json
import logging
from typing import Any

import httpx

import config
from channels.base import ParseError
from tools.base import Tool, ToolResult
from utils import track_latency

log = logging.getLogger(__name__)

MAX_FORECAST_DAYS = 7


def _location_line(data: dict) -> str | None:
    location = data.get("location")
    if not isinstance(location, dict):
        return None
    name = location.get("name")
    country = location.get("country")
    if not isinstance(name, str) or not isinstance(country, str):
        return None

    line = f"Location: {name}, "
    region = location.get("region")
    if isinstance(region, str) and region:
        line += f"{region}, "
    line += country

    lat, lon = location.get("lat"), location.get("lon")
    if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
        line += f" (lat {lat:.2f}, lon {lon:.2f})"
    return line


def _percentage(value: Any) -> str | None:
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        return trimmed if trimmed.endswith("%") else f"{trimmed}%"
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return f"{value:.0f}%"
    return None


def summarize_current(data: dict) -> str | None:
    """One-paragraph summary of a ``current.json`` payload, or None if incomplete."""
    location_line = _location_line(data)
    current = data.get("current")
    if location_line is None or not isinstance(current, dict):
        return None
    try:
        condition = current["condition"]["text"]
        temp = float(current["temp_c"])
        feels_like = float(current["feelslike_c"])
        humidity = int(current["humidity"])
        wind_kph = float(current["wind_kph"])
    except (KeyError, TypeError, ValueError):
        return None
    wind_dir = current.get("wind_dir") or ""
    updated = current.get("last_updated") or "unknown"

    return (
        f"{location_line}\n"
        f"Current: {condition}, temp {temp:.1f} C (feels {feels_like:.1f} C), humidity {humidity}%\n"
        f"Wind: {wind_kph:.1f} kph {wind_dir}\n"
        f"Last updated: {updated}"
    )


def summarize_forecast(data: dict, days: int) -> str | None:
    """Day-per-line summary of a ``forecast.json`` payload, or None if incomplete."""
    location_line = _location_line(data)
    forecast_block = data.get("forecast")
    forecast = forecast_block.get("forecastday") if isinstance(forecast_block, dict) else None
    if location_line is None or not isinstance(forecast, list):
        return None

    requested = min(days, len(forecast))
    lines = [location_line, f"Forecast (next {requested} day(s)):"]
    for day in forecast[:requested]:
        try:
            date = day["date"]
            details = day["day"]
            condition = details["condition"]["text"]
            high = float(details["maxtemp_c"])
            low = float(details["mintemp_c"])
        except (KeyError, TypeError, ValueError):
            return None
        line = f"{date}: {condition}, min {low:.1f} C / max {high:.1f} C"
        rain = _percentage(details.get("daily_chance_of_rain"))
        if rain:
            line += f" (rain chance {rain})"
        lines.append(line)

    return "\n".join(lines)


class WeatherApiTool(Tool):
    """WeatherAPI.com integration for current conditions and forecasts."""

    name = "weather_api"
    description = "Fetch current weather or a 7-day forecast using WeatherAPI.com"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._base_url = (base_url or config.WEATHER_API_BASE_URL).rstrip("/")
        self._transport = transport

    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "api_key": {
                    "type": "string",
                    "description": "WeatherAPI.com key (optional, defaults to WEATHER_API_KEY)",
                },
                "query": {
                    "type": "string",
                    "description": "City name, ZIP code, or lat,long to look up",
                },
                "days": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_FORECAST_DAYS,
                    "description": "Number of days to forecast (1 = current conditions)",
                },
            },
            "required": ["query"],
            "additionalProperties": False,
        }

    @track_latency("weather_api")
    async def execute(self, args: dict[str, Any]) -> ToolResult:
        api_key = str(args.get("api_key") or "").strip() or self._api_key or config.WEATHER_API_KEY
        if not api_key:
            return ToolResult.fail(
                "WeatherAPI key not provided. Pass 'api_key' or set WEATHER_API_KEY."
            )

        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            return ToolResult.fail("Missing 'query' parameter")

        raw_days = args.get("days")
        if not isinstance(raw_days, int) or isinstance(raw_days, bool):
            raw_days = 1
        days = max(1, min(MAX_FORECAST_DAYS, raw_days))
        endpoint = "forecast.json" if days > 1 else "current.json"

        params: dict[str, Any] = {"key": api_key, "q": query}
        if days > 1:
            params["days"] = days

        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                resp = await client.get(f"{self._base_url}/{endpoint}", params=params)
        except httpx.HTTPError as exc:
            return ToolResult.fail(f"WeatherAPI request failed: {exc}")

        if resp.is_error:
            try:
                detail = resp.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                detail = resp.text
            return ToolResult.fail(f"WeatherAPI error ({resp.status_code}): {detail}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ParseError(f"Failed to parse WeatherAPI response: {exc}") from exc
        if not isinstance(data, dict):
            raise ParseError("WeatherAPI response is not a JSON object")

        pretty = json.dumps(data, indent=2)
        if days > 1:
            summary = summarize_forecast(data, days)
        else:
            summary = summarize_current(data)
        if summary is None:
            log.debug("WeatherAPI response shape incomplete; returning raw JSON")
        return ToolResult.ok(summary or pretty)
