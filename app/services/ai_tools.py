"""
Tools the assistant may call while answering a chat message.

Each tool is defined in the { name, description, input_schema } format and
converted to OpenAI function-calling format when sent to the model.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

logger = logging.getLogger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
TOOL_HTTP_TIMEOUT = 8.0
MAX_LOCATION_LENGTH = 120
MAX_TIMEZONE_LENGTH = 80


def get_chat_tools() -> List[Dict[str, Any]]:
    """Return all tool definitions available to the assistant."""
    return [
        {
            "name": "get_current_weather",
            "description": (
                "Get the current weather for a city or place name. "
                "Use when the user asks about weather, temperature, rain or wind somewhere."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "location": {
                        "type": "string",
                        "description": "City or place, e.g. 'Lisbon' or 'Austin, Texas'.",
                    },
                },
                "required": ["location"],
            },
        },
        {
            "name": "get_time",
            "description": "Get the current date and time in an IANA timezone such as 'Europe/Berlin'.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "timezone": {
                        "type": "string",
                        "description": "IANA timezone name. Defaults to UTC.",
                    },
                },
            },
        },
    ]


def to_openai_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Convert tool definitions to OpenAI function-calling format.

    Ours:    { name, description, input_schema: {...} }
    OpenAI:  { type: "function", function: { name, description, parameters: {...} } }
    """
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for tool in tools
    ]


class ChatToolExecutor:
    """Runs tool calls and returns their results as JSON strings for the model."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        return get_chat_tools()

    async def execute(self, name: str, arguments: str) -> str:
        try:
            args = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            return json.dumps({"error": "arguments were not valid JSON"})
        if not isinstance(args, dict):
            return json.dumps({"error": "arguments must be an object"})

        try:
            if name == "get_current_weather":
                result = await self.get_current_weather(str(args.get("location", "")))
            elif name == "get_time":
                result = self.get_time(str(args.get("timezone") or "UTC"))
            else:
                result = {"error": f"unknown tool {name}"}
        except httpx.HTTPError as e:
            logger.warning(f"Tool {name} HTTP error: {e}")
            result = {"error": "weather service unavailable"}
        return json.dumps(result)

    async def get_current_weather(self, location: str) -> Dict[str, Any]:
        location = location.strip()[:MAX_LOCATION_LENGTH]
        if not location:
            return {"error": "location is required"}

        async with httpx.AsyncClient(timeout=TOOL_HTTP_TIMEOUT, transport=self._transport) as client:
            geo = await client.get(
                GEOCODING_URL,
                params={"name": location, "count": 1, "language": "en", "format": "json"},
            )
            geo.raise_for_status()
            places = geo.json().get("results") or []
            if not places:
                return {"error": f"could not find {location}"}
            place = places[0]

            forecast = await client.get(
                FORECAST_URL,
                params={
                    "latitude": place["latitude"],
                    "longitude": place["longitude"],
                    "current": "temperature_2m,relative_humidity_2m,precipitation,wind_speed_10m",
                    "timezone": "auto",
                },
            )
            forecast.raise_for_status()
            data = forecast.json()

        current = data.get("current") or {}
        units = data.get("current_units") or {}
        return {
            "location": ", ".join(p for p in (place.get("name"), place.get("admin1"), place.get("country")) if p),
            "time": current.get("time"),
            "temperature": current.get("temperature_2m"),
            "temperature_unit": units.get("temperature_2m", "°C"),
            "humidity_percent": current.get("relative_humidity_2m"),
            "precipitation": current.get("precipitation"),
            "wind_speed": current.get("wind_speed_10m"),
            "wind_speed_unit": units.get("wind_speed_10m", "km/h"),
        }

    def get_time(self, timezone: str) -> Dict[str, Any]:
        timezone = timezone.strip()[:MAX_TIMEZONE_LENGTH] or "UTC"
        try:
            tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return {"error": f"unknown timezone {timezone}"}
        now = datetime.now(tz)
        return {
            "timezone": timezone,
            "iso": now.isoformat(timespec="seconds"),
            "date": now.strftime("%A, %d %B %Y"),
            "time": now.strftime("%H:%M"),
        }
