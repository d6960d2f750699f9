"""HTTP-backed tools: web search, page retrieval and weather."""

from typing import Any

import httpx
import structlog

from agent_vendor.core.config import Settings
from agent_vendor.core.exceptions import ToolExecutionError

logger = structlog.get_logger(__name__)

CONTENT_CHARACTER_LIMIT = 10_000
MAX_SEARCH_RESULTS = 10


async def search(args: dict[str, Any], settings: Settings) -> dict[str, Any]:
    """Web search through a Tavily-compatible endpoint."""
    query = str(args.get("query", "")).strip()
    if not query:
        raise ToolExecutionError("searchTool", "query is required")
    if not settings.search_api_key:
        raise ToolExecutionError("searchTool", "search API key is not configured")

    max_results = min(max(int(args.get("max_results", 5)), 1), MAX_SEARCH_RESULTS)
    payload = {
        "query": query,
        "search_depth": "basic",
        "max_results": max_results,
        "include_answer": bool(args.get("include_answer", True)),
        "include_images": True,
    }
    for key in ("include_domains", "exclude_domains"):
        if args.get(key):
            payload[key] = list(args[key])

    async with httpx.AsyncClient(timeout=settings.tool_http_timeout_seconds) as client:
        response = await client.post(
            settings.search_api_url,
            headers={"Authorization": f"Bearer {settings.search_api_key}"},
            json=payload,
        )

    if response.status_code != 200:
        raise ToolExecutionError("searchTool", f"search failed with status {response.status_code}")

    data = response.json()
    results = [
        {
            "title": r.get("title", ""),
            "url": r.get("url", ""),
            "content": r.get("content", ""),
        }
        for r in data.get("results", [])
        if r.get("url")
    ]
    return {
        "query": query,
        "answer": data.get("answer"),
        "results": results,
        "images": data.get("images", []),
    }


async def retrieve(args: dict[str, Any], settings: Settings) -> dict[str, Any]:
    """Fetch a page as plain text through a reader proxy."""
    url = str(args.get("url", "")).strip()
    if not url.startswith(("http://", "https://")):
        raise ToolExecutionError("retrieveTool", "a http(s) url is required")

    headers = {"X-Return-Format": "text"}
    if settings.retrieve_api_key:
        headers["Authorization"] = f"Bearer {settings.retrieve_api_key}"

    async with httpx.AsyncClient(timeout=settings.tool_http_timeout_seconds, follow_redirects=True) as client:
        response = await client.get(f"{settings.retrieve_api_url}{url}", headers=headers)

    if response.status_code != 200:
        raise ToolExecutionError("retrieveTool", f"retrieval failed with status {response.status_code}")

    return {
        "query": "",
        "results": [{"title": "", "url": url, "content": response.text[:CONTENT_CHARACTER_LIMIT]}],
        "images": [],
    }


async def get_weather(args: dict[str, Any], settings: Settings) -> dict[str, Any]:
    """Current conditions and forecast for a coordinate pair."""
    try:
        latitude = float(args["latitude"])
        longitude = float(args["longitude"])
    except (KeyError, TypeError, ValueError) as e:
        raise ToolExecutionError("getWeather", "latitude and longitude are required") from e

    params = {
        "latitude": latitude,
        "longitude": longitude,
        "current": "temperature_2m",
        "hourly": "temperature_2m",
        "daily": "sunrise,sunset",
        "timezone": "auto",
    }
    async with httpx.AsyncClient(timeout=settings.tool_http_timeout_seconds) as client:
        response = await client.get(settings.weather_api_url, params=params)

    if response.status_code != 200:
        raise ToolExecutionError("getWeather", f"weather lookup failed with status {response.status_code}")
    return response.json()
