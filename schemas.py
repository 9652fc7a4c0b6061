import math
from datetime import datetime, timezone
from typing import Annotated, List, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainValidator, field_validator
from pydantic.alias_generators import to_camel

# Fields a record must always carry; an update may replace them but never clear them.
REQUIRED_FIELDS = ("location", "temperature", "description", "condition")


class DateRangeError(ValueError):
    """Start date falls after end date."""

    message = "Start date must be before end date"

    def __init__(self):
        super().__init__(self.message)


def _to_number(value):
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError:
                pass
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError("Input should be a finite number")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _naive_utc(value):
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Whole numbers come back as ints, so 12.0 from a float column serializes as 12.
Number = Annotated[Union[int, float], PlainValidator(_to_number)]
UtcDatetime = Annotated[datetime, AfterValidator(_naive_utc)]


def check_date_order(start_date, end_date):
    if start_date is not None and end_date is not None and start_date > end_date:
        raise DateRangeError()


# Shared config: camelCase on the wire, snake_case in Python, unknown keys dropped.
class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json(self):
        return self.model_dump(mode="json", by_alias=True)


class ForecastDay(_Schema):
    date: str
    high_temp: Number
    low_temp: Number
    condition: str
    description: str


class WeatherRecordCreate(_Schema):
    """Body of a manual create, and the adapter's normalized lookup result."""

    location: str = Field(min_length=1)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    temperature: Number
    feels_like: Optional[Number] = None
    humidity: Optional[Number] = None
    wind_speed: Optional[Number] = None
    visibility: Optional[Number] = None
    description: str = Field(min_length=1)
    condition: str = "Unknown"
    forecast: Optional[List[ForecastDay]] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None


class WeatherRecordUpdate(_Schema):
    """Sparse set of field assignments.

    Only the keys present in the body end up in ``model_fields_set``; those are
    the fields an update assigns. Everything else is left untouched.
    """

    location: Optional[str] = Field(default=None, min_length=1)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    temperature: Optional[Number] = None
    feels_like: Optional[Number] = None
    humidity: Optional[Number] = None
    wind_speed: Optional[Number] = None
    visibility: Optional[Number] = None
    description: Optional[str] = Field(default=None, min_length=1)
    condition: Optional[str] = None
    forecast: Optional[List[ForecastDay]] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None

    @field_validator(*REQUIRED_FIELDS)
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value

    def changes(self):
        """Return ``{field: value}`` for exactly the fields the caller supplied."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class WeatherRecord(WeatherRecordCreate):
    id: str
    search_date: datetime

    def merged(self, changes):
        return self.model_copy(update=changes)


class UserCreate(_Schema):
    username: str = Field(min_length=1)
    password: str


class User(UserCreate):
    id: str


def validate_create(payload):
    """Parse a create body and enforce start <= end."""
    data = WeatherRecordCreate.model_validate(payload)
    check_date_order(data.start_date, data.end_date)
    return data


def validate_update(payload):
    data = WeatherRecordUpdate.model_validate(payload)
    check_date_order(data.start_date, data.end_date)
    return data


def validation_details(exc):
    """Flatten a pydantic ValidationError into ``[{field, message, type}]``."""
    details = []
    for error in exc.errors(include_url=False):
        details.append({
            "field": ".".join(str(part) for part in error["loc"]) or "body",
            "message": error["msg"],
            "type": error["type"],
        })
    return details
