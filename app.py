import csv
import io
import logging
import os

from flask import Flask, Response, current_app, flash, jsonify, redirect, render_template, request, url_for
from pydantic import ValidationError
from werkzeug.exceptions import BadRequest, HTTPException

import video_api as video_api
import weather_api as weather_api
from schemas import DateRangeError, check_date_order, validate_create, validate_update, validation_details
from storage import select_store

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 5
CSV_HEADERS = ["Location", "Temperature", "Description", "Date", "Humidity", "Wind Speed"]
RECORD_FORM_FIELDS = ("location", "temperature", "description", "condition", "start_date", "end_date")


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("", "0", "false", "no", "off")


def _store():
    return current_app.extensions["record_store"]


def _error(message, status, details=None):
    body = {"error": message}
    if details is not None:
        body["details"] = details
    return jsonify(body), status


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body


# Helper: keep only the non-blank form fields so blank inputs mean "not provided".
def _form_payload(form, fields):
    return {name: form[name].strip() for name in fields if (form.get(name) or "").strip()}


def _lookup(location):
    """Fetch weather for `location` and write it through to the store."""
    config = current_app.config
    weather = weather_api.fetch_weather(
        location,
        config["WEATHER_API_KEY"],
        base_url=config["WEATHER_API_URL"],
        timeout=config["HTTP_TIMEOUT"],
    )
    record = _store().create_record(weather)
    logger.info("Stored lookup for %r as record %s", weather.location, record.id)
    return weather, record


# Videos for the current-conditions card: the location's own, else generic travel picks.
def _page_videos(location):
    """Return ``(videos, note)``; both empty when the video service is not configured."""
    config = current_app.config
    try:
        videos = video_api.location_videos(location, config["VIDEO_API_KEY"], timeout=config["HTTP_TIMEOUT"])
    except video_api.MissingApiKey:
        return [], None
    except video_api.VideoFetchError as e:
        logger.warning("Video search for %r failed: %s", location, e)
        videos = []
    if videos:
        return videos, None

    try:
        videos = video_api.random_travel_videos(config["VIDEO_API_KEY"], timeout=config["HTTP_TIMEOUT"])
    except video_api.VideoFetchError as e:
        logger.warning("Travel video search failed: %s", e)
        videos = []
    if not videos:
        return [], f"No videos available for {location}."
    return videos, f"No videos found for {location}. Showing popular travel videos instead."


# Applies a validated partial update; start <= end must also hold for the merged record.
def _apply_update(record_id, changes):
    store = _store()
    existing = store.get_record(record_id)
    if existing is None:
        return None
    supplied = changes.model_fields_set
    check_date_order(
        changes.start_date if "start_date" in supplied else existing.start_date,
        changes.end_date if "end_date" in supplied else existing.end_date,
    )
    return store.update_record(record_id, changes)


def _csv_number(value):
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def records_to_csv(records):
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for record in records:
        searched = record.search_date
        writer.writerow([
            record.location,
            _csv_number(record.temperature),
            record.description,
            f"{searched.month}/{searched.day}/{searched.year}",
            _csv_number(record.humidity),
            _csv_number(record.wind_speed),
        ])
    return buffer.getvalue()


# App factory: reads configuration, picks the record store once, and registers routes.
def create_app(test_config=None):
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev-secret"),
        WEATHER_API_KEY=os.environ.get("OPENWEATHER_API_KEY", ""),
        WEATHER_API_URL=os.environ.get("OPENWEATHER_BASE_URL", weather_api.DEFAULT_BASE_URL),
        VIDEO_API_KEY=os.environ.get("YOUTUBE_API_KEY", ""),
        DATABASE_URL=os.environ.get("DATABASE_URL") or os.environ.get("MONGODB_URI"),
        STORE_CONNECT_TIMEOUT=float(os.environ.get("STORE_CONNECT_TIMEOUT", "5")),
        STORE_FALLBACK=_env_flag("STORE_FALLBACK", True),
        HTTP_TIMEOUT=float(os.environ.get("HTTP_TIMEOUT", "10")),
    )
    if test_config:
        app.config.update(test_config)

    if not app.config["WEATHER_API_KEY"]:
        logger.warning("OPENWEATHER_API_KEY is not set; weather lookups will be unavailable")
    if not app.config["VIDEO_API_KEY"]:
        logger.warning("YOUTUBE_API_KEY is not set; location videos will be unavailable")

    app.extensions["record_store"] = select_store(app)

    # ---- error handlers -------------------------------------------------

    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        return _error("Validation error", 400, validation_details(e))

    @app.errorhandler(DateRangeError)
    def handle_date_range_error(e):
        return _error(str(e), 400)

    @app.errorhandler(weather_api.MissingApiKey)
    def handle_missing_api_key(e):
        logger.error("%s", e)
        return _error(f"{e.service} service is not configured", 503)

    @app.errorhandler(weather_api.WeatherFetchError)
    def handle_weather_fetch_error(e):
        logger.error("Weather fetch failed (status %s): %s", e.status_code, e)
        return _error(e.user_message, 500)

    @app.errorhandler(video_api.VideoFetchError)
    def handle_video_fetch_error(e):
        logger.error("Video fetch failed: %s", e)
        return _error(e.user_message, 500)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        if request.path.startswith("/api/"):
            return _error(e.description, e.code)
        return e

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return _error("Internal server error", 500)

    # ---- JSON API -------------------------------------------------------

    @app.route("/api/weather/", methods=["GET"])
    def lookup_without_location():
        return _error("Location is required", 400)

    @app.route("/api/weather/<location>", methods=["GET"])
    def lookup_weather(location):
        if not location.strip():
            return _error("Location is required", 400)
        weather, record = _lookup(location)
        payload = weather.model_dump(mode="json", by_alias=True, exclude={"start_date", "end_date"})
        return jsonify(weather=payload, record=record.to_json())

    @app.route("/api/weather", methods=["POST"])
    def create_record():
        data = validate_create(_json_body())
        record = _store().create_record(data)
        return jsonify(record.to_json()), 201

    @app.route("/api/weather", methods=["GET"])
    def list_records():
        return jsonify([record.to_json() for record in _store().list_records()])

    @app.route("/api/weather/<record_id>", methods=["PUT"])
    def update_record(record_id):
        changes = validate_update(_json_body())
        record = _apply_update(record_id, changes)
        if record is None:
            return _error("Weather record not found", 404)
        return jsonify(record.to_json())

    @app.route("/api/weather/<record_id>", methods=["DELETE"])
    def delete_record(record_id):
        if not _store().delete_record(record_id):
            return _error("Weather record not found", 404)
        return jsonify(success=True)

    @app.route("/api/weather/export/csv", methods=["GET"])
    def export_csv():
        return Response(
            records_to_csv(_store().list_records()),
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=weather-data.csv"},
        )

    @app.route("/api/videos/random-travel", methods=["GET"])
    def random_travel_videos():
        videos = video_api.random_travel_videos(app.config["VIDEO_API_KEY"], timeout=app.config["HTTP_TIMEOUT"])
        return jsonify(videos=videos)

    @app.route("/api/videos/<location>", methods=["GET"])
    def location_videos(location):
        if not location.strip():
            return _error("Location is required", 400)
        videos = video_api.location_videos(location, app.config["VIDEO_API_KEY"], timeout=app.config["HTTP_TIMEOUT"])
        return jsonify(videos=videos)

    # ---- HTML pages -----------------------------------------------------

    @app.route("/", methods=["GET"])
    def index():
        location = (request.args.get("location") or "").strip()
        weather = None
        videos, videos_note = [], None
        if location:
            try:
                weather, _ = _lookup(location)
            except weather_api.MissingApiKey:
                flash("Weather lookups are not configured on this server.", "error")
            except weather_api.WeatherFetchError as e:
                logger.error("Weather fetch failed (status %s): %s", e.status_code, e)
                flash(e.user_message, "error")
            else:
                videos, videos_note = _page_videos(weather.location)

        records = _store().list_records()
        return render_template(
            "index.html",
            location=location,
            weather=weather,
            videos=videos,
            videos_note=videos_note,
            history=records[:HISTORY_LIMIT],
            records=records,
        )

    # Add route: manual record from the create form.
    @app.route("/add", methods=["POST"])
    def add():
        try:
            data = validate_create(_form_payload(request.form, RECORD_FORM_FIELDS))
        except ValidationError as e:
            for detail in validation_details(e):
                flash(f"{detail['field']}: {detail['message']}", "error")
            return redirect(url_for("index"))
        except DateRangeError as e:
            flash(str(e), "error")
            return redirect(url_for("index"))

        _store().create_record(data)
        flash("Record created.", "success")
        return redirect(url_for("index"))

    # Update route: only the fields filled in on the form are changed.
    @app.route("/update", methods=["POST"])
    def update():
        record_id = (request.form.get("record_id") or "").strip()
        if not record_id:
            flash("Please select a record to update.", "error")
            return redirect(url_for("index"))
        try:
            changes = validate_update(_form_payload(request.form, RECORD_FORM_FIELDS))
            record = _apply_update(record_id, changes)
        except ValidationError as e:
            for detail in validation_details(e):
                flash(f"{detail['field']}: {detail['message']}", "error")
            return redirect(url_for("index"))
        except DateRangeError as e:
            flash(str(e), "error")
            return redirect(url_for("index"))

        if record is None:
            flash("Record not found.", "error")
        else:
            flash("Record updated.", "success")
        return redirect(url_for("index"))

    # Deletes the selected record.
    @app.route("/delete/<record_id>", methods=["POST"])
    def delete(record_id):
        if not _store().delete_record(record_id):
            flash("Record not found.", "error")
            return redirect(request.referrer or url_for("index"))
        flash("Record deleted.", "success")
        return redirect(request.referrer or url_for("index"))

    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = create_app()
    app.run(debug=True)
