import logging
import random

import requests
from requests import RequestException

from weather_api import MissingApiKey

logger = logging.getLogger(__name__)

SEARCH_URL = "https://www.googleapis.com/youtube/v3/search"

# Queries used when there is no specific place to search for.
TRAVEL_QUERIES = (
    "world travel destinations",
    "best places to visit",
    "travel vlog city walk",
    "beautiful places around the world",
    "4k travel documentary",
)


class VideoFetchError(RuntimeError):
    user_message = "Failed to fetch videos"


def _to_video(item):
    video_id = (item.get("id") or {}).get("videoId")
    if not video_id:
        return None
    snippet = item.get("snippet") or {}
    thumbnails = snippet.get("thumbnails") or {}
    thumbnail = thumbnails.get("medium") or thumbnails.get("default") or {}
    return {
        "id": video_id,
        "title": snippet.get("title", ""),
        "description": snippet.get("description", ""),
        "thumbnail": thumbnail.get("url", ""),
        "channelTitle": snippet.get("channelTitle", ""),
    }


def search_videos(query, api_key, max_results=6, timeout=10):
    """Search YouTube for embeddable videos matching `query`."""
    if not api_key:
        raise MissingApiKey("Video")

    params = {
        "part": "snippet",
        "q": query,
        "type": "video",
        "videoEmbeddable": "true",
        "maxResults": max_results,
        "key": api_key,
    }
    try:
        response = requests.get(SEARCH_URL, params=params, timeout=timeout)
    except RequestException as e:
        raise VideoFetchError(f"Video search for {query!r} failed: {e}")
    if not 200 <= response.status_code < 300:
        logger.error("Video API returned %s for %r: %s", response.status_code, query, response.text[:200])
        raise VideoFetchError(f"Video API error: {response.status_code}")

    try:
        items = response.json().get("items") or []
    except (ValueError, AttributeError) as e:
        raise VideoFetchError(f"Unexpected video payload for {query!r}: {e}")
    return [video for video in map(_to_video, items) if video is not None]


def location_videos(location, api_key, timeout=10):
    return search_videos(f"{location.strip()} travel guide", api_key, timeout=timeout)


def random_travel_videos(api_key, choice=random.choice, timeout=10):
    return search_videos(choice(TRAVEL_QUERIES), api_key, timeout=timeout)
