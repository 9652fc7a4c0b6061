import logging
import math
import re
from datetime import datetime, timedelta, timezone

import requests
from requests import RequestException

from schemas import ForecastDay, WeatherRecordCreate

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openweathermap.org/data/2.5"
COORDINATE_PATTERN = re.compile(r"^-?\d+\.?\d*,-?\d+\.?\d*$")

# Forecast samples are 3 hours apart: every 8th one is roughly a day later.
SAMPLES_PER_DAY = 8
FORECAST_DAYS = 5


class MissingApiKey(RuntimeError):
    """An external provider was called without its API key configured."""

    def __init__(self, service):
        super().__init__(f"{service} API key is not configured")
        self.service = service


class WeatherFetchError(RuntimeError):
    user_message = "Failed to fetch weather data. Please check the location and try again."

    def __init__(self, detail, status_code=None):
        super().__init__(detail)
        self.status_code = status_code


# Is the location a "lat,lon" pair rather than a place name?
def is_coordinate(location):
    return bool(COORDINATE_PATTERN.match((location or "").strip()))


# Half-up rounding to a whole number; round() would send 2.5 to 2.
def round_half_up(value):
    if value is None:
        return None
    return int(math.floor(value + 0.5))


def _location_params(location):
    location = location.strip()
    if is_coordinate(location):
        latitude, longitude = location.split(",")
        return {"lat": latitude, "lon": longitude}
    return {"q": location}


def _get(url, params, timeout):
    try:
        return requests.get(url, params=params, timeout=timeout)
    except RequestException as e:
        raise WeatherFetchError(f"Weather request to {url} failed: {e}")


def _weekday(timestamp, offset_seconds=0):
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc) + timedelta(seconds=offset_seconds)
    return moment.strftime("%A")


def reduce_forecast(payload):
    """
    Turn the provider's 3-hourly forecast list into at most FORECAST_DAYS
    ForecastDay entries: one fixed-stride sample per day, not a daily aggregate.
    """
    offset = (payload.get("city") or {}).get("timezone") or 0
    days = []
    for sample in (payload.get("list") or [])[::SAMPLES_PER_DAY][:FORECAST_DAYS]:
        main = sample["main"]
        weather = sample["weather"][0]
        high = round_half_up(main["temp_max"])
        low = round_half_up(main["temp_min"])
        days.append(ForecastDay(
            date=_weekday(sample["dt"], offset),
            high_temp=max(high, low),
            low_temp=min(high, low),
            condition=weather["main"],
            description=weather["description"],
        ))
    return days


# Fetches the 5-day forecast; failures here only cost the forecast, never the lookup.
def fetch_forecast(latitude, longitude, api_key, base_url=DEFAULT_BASE_URL, timeout=10):
    params = {"lat": latitude, "lon": longitude, "appid": api_key, "units": "metric"}
    try:
        response = requests.get(f"{base_url}/forecast", params=params, timeout=timeout)
    except RequestException as e:
        logger.warning("Forecast request failed for %s,%s: %s", latitude, longitude, e)
        return []
    if not 200 <= response.status_code < 300:
        logger.warning("Forecast API returned %s for %s,%s", response.status_code, latitude, longitude)
        return []
    try:
        return reduce_forecast(response.json())
    except (ValueError, KeyError, IndexError, TypeError) as e:
        logger.warning("Unexpected forecast payload for %s,%s: %s", latitude, longitude, e)
        return []


def fetch_weather(location, api_key, base_url=DEFAULT_BASE_URL, timeout=10):
    """
    Look up current conditions plus a 5-day forecast for a place name or a
    "lat,lon" pair and return them as a WeatherRecordCreate.

    Temperatures are whole degrees Celsius, wind speed is km/h and
    visibility is km. Raises MissingApiKey without a key and
    WeatherFetchError when the current-conditions call fails.
    """
    if not api_key:
        raise MissingApiKey("Weather")

    params = dict(_location_params(location), appid=api_key, units="metric")
    response = _get(f"{base_url}/weather", params, timeout)
    if not 200 <= response.status_code < 300:
        logger.error("Weather API returned %s for %r: %s", response.status_code, location, response.text[:200])
        raise WeatherFetchError(f"Weather API error: {response.status_code}", status_code=response.status_code)

    try:
        data = response.json()
        coord = data["coord"]
        latitude = coord["lat"]
        longitude = coord["lon"]
        main = data["main"]
        temperature = main["temp"]
        weather = data["weather"][0]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise WeatherFetchError(f"Unexpected weather payload for {location!r}: {e}")

    wind_speed = (data.get("wind") or {}).get("speed")
    visibility = data.get("visibility")
    forecast = fetch_forecast(latitude, longitude, api_key, base_url=base_url, timeout=timeout)

    return WeatherRecordCreate(
        location=data.get("name") or location.strip(),
        latitude=latitude,
        longitude=longitude,
        temperature=round_half_up(temperature),
        feels_like=round_half_up(main.get("feels_like")),
        humidity=main.get("humidity"),
        wind_speed=round_half_up(wind_speed * 3.6) if wind_speed is not None else None,
        visibility=round_half_up(visibility / 1000) if visibility is not None else None,
        description=weather["description"],
        condition=weather["main"],
        forecast=forecast,
    )
