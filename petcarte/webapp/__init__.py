"""Flask JSON API over the PetCarte reservation engine."""

from __future__ import annotations

from typing import Any, Mapping

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from petcarte.booking.config import Settings, load_settings
from petcarte.booking.database import get_connection, initialize_database
from petcarte.booking.errors import BookingError, ValidationError
from petcarte.booking.identity import CallerIdentity, extract_bearer_token
from petcarte.booking.logging_config import LoggerAdapter, configure_logging, get_logger
from petcarte.booking.system import PetCareSystem, open_system

logger = get_logger(__name__)


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _int_field(payload: Mapping[str, Any], *names: str, required: bool = True) -> int | None:
    """Read an integer field accepting snake_case or camelCase spellings."""

    for name in names:
        value = payload.get(name)
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            break
        try:
            return int(value)
        except (TypeError, ValueError):
            break
    if required:
        raise ValidationError(f"{names[0]} must be an integer")
    return None


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(BookingError)
    def handle_booking_error(error: BookingError):
        logger.warning(
            "Request rejected",
            extra={
                "path": request.path,
                "error_code": error.code,
                "status": error.status,
                "detail": error.message,
            },
        )
        return jsonify({"error": error.message}), error.status

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        logger.error(
            "Unhandled error",
            exc_info=True,
            extra={"path": request.path, "method": request.method},
        )
        return jsonify({"error": "Internal server error"}), 500


def create_app(settings: Settings | None = None) -> Flask:
    """Create and configure the Flask application."""

    settings = settings or load_settings()
    configure_logging(settings.app_name, settings.log_level)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key
    app.config["PETCARTE_SETTINGS"] = settings

    conn = get_connection(settings.database_path)
    try:
        initialize_database(conn)
    finally:
        conn.close()

    register_error_handlers(app)

    def system() -> PetCareSystem:
        if "system" not in g:
            g.system = open_system(settings)
        return g.system

    def identity() -> CallerIdentity:
        if "identity" not in g:
            g.identity = system().claims.read(extract_bearer_token(request.headers))
        return g.identity

    def staff() -> CallerIdentity:
        caller = identity()
        caller.require_staff()
        return caller

    def store_admin() -> CallerIdentity:
        caller = identity()
        caller.require_store_admin()
        return caller

    @app.teardown_appcontext
    def close_system(exc: BaseException | None) -> None:
        current = g.pop("system", None)
        if current is not None:
            current.close()

    @app.after_request
    def log_request(response):
        caller = g.get("identity")
        request_logger = LoggerAdapter(
            logger,
            {
                "method": request.method,
                "path": request.path,
                "actor": caller.actor if caller else None,
            },
        )
        request_logger.info("Request completed", extra={"status": response.status_code})
        return response

    @app.get("/health")
    def health() -> Any:
        return jsonify({"status": "ok", "schemaVersion": system().schema_version()})

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------
    @app.post("/reservations")
    def create_reservation() -> Any:
        caller = identity()
        payload = _json_body()
        reservation = system().reservations.create(
            caller,
            dog_id=_int_field(payload, "dog_id", "dogId"),
            reservation_date=payload.get("reservation_date") or "",
            reservation_time=payload.get("reservation_time"),
            service_type=payload.get("service_type") or "",
            service_details=payload.get("service_details"),
            room_id=_int_field(payload, "room_id", "roomId", required=False),
            end_datetime=payload.get("end_datetime"),
            notes=payload.get("notes"),
        )
        return jsonify(reservation), 201

    @app.get("/reservations")
    def list_reservations() -> Any:
        reservations = system().reservations.list_for(
            identity(),
            month=request.args.get("month") or None,
            service_type=request.args.get("service_type") or None,
        )
        return jsonify(reservations)

    @app.get("/reservations/<int:reservation_id>")
    def get_reservation(reservation_id: int) -> Any:
        return jsonify(system().reservations.get(identity(), reservation_id))

    @app.put("/reservations/<int:reservation_id>")
    def update_reservation(reservation_id: int) -> Any:
        payload = _json_body()
        reservation = system().reservations.edit(
            identity(),
            reservation_id,
            reservation_date=payload.get("reservation_date"),
            reservation_time=payload.get("reservation_time"),
            notes=payload.get("notes"),
        )
        return jsonify(reservation)

    @app.put("/reservations/<int:reservation_id>/cancel")
    def cancel_reservation(reservation_id: int) -> Any:
        reservation = system().reservations.cancel(identity(), reservation_id)
        return jsonify({"message": "Reservation cancelled", "reservation": reservation})

    @app.delete("/reservations/<int:reservation_id>")
    def delete_reservation(reservation_id: int) -> Any:
        system().reservations.soft_delete(identity(), reservation_id)
        return jsonify({"message": "Reservation deleted"})

    @app.post("/reservations/<int:reservation_id>/pre-visit-input")
    def submit_pre_visit_input(reservation_id: int) -> Any:
        payload = _json_body()
        pre_visit = system().reservations.submit_pre_visit_input(
            identity(),
            reservation_id,
            health_status=payload.get("health_status"),
            breakfast_status=payload.get("breakfast_status"),
            morning_urination=payload.get("morning_urination"),
            morning_defecation=payload.get("morning_defecation"),
            notes=payload.get("notes"),
            details=payload.get("details"),
        )
        return jsonify(pre_visit), 201

    @app.get("/pre-visit-inputs/reservation/<int:reservation_id>")
    def get_pre_visit_input(reservation_id: int) -> Any:
        return jsonify(system().reservations.get_pre_visit_input(identity(), reservation_id))

    @app.get("/pre-visit-inputs/latest/<int:dog_id>")
    def latest_pre_visit_input(dog_id: int) -> Any:
        pre_visit = system().reservations.latest_pre_visit_input(
            identity(), dog_id, service_type=request.args.get("service_type") or None
        )
        return jsonify(pre_visit)

    # ------------------------------------------------------------------
    # Check-in / check-out
    # ------------------------------------------------------------------
    def _qr_payload() -> tuple[str, int]:
        payload = _json_body()
        qr_code = payload.get("qrCode") or payload.get("qr_code")
        if not qr_code:
            raise ValidationError("qrCode is required")
        return qr_code, _int_field(payload, "reservationId", "reservation_id")

    @app.post("/check-in")
    def check_in() -> Any:
        caller = identity()
        qr_code, reservation_id = _qr_payload()
        reservation = system().reservations.check_in(caller, reservation_id, qr_code)
        return jsonify({"message": "Checked in", "reservation": reservation})

    @app.post("/check-out")
    def check_out() -> Any:
        caller = identity()
        qr_code, reservation_id = _qr_payload()
        reservation = system().reservations.check_out(caller, reservation_id, qr_code)
        return jsonify({"message": "Checked out", "reservation": reservation})

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------
    @app.get("/availability")
    def availability() -> Any:
        month = request.args.get("month")
        if not month:
            raise ValidationError("month must be YYYY-MM (e.g. 2026-01)")
        return jsonify(system().availability.month_overview(identity().store_id, month))

    @app.get("/hotel-availability")
    def hotel_availability() -> Any:
        rooms = system().availability.hotel_availability(
            identity().store_id,
            request.args.get("checkin_datetime") or "",
            request.args.get("checkout_datetime") or "",
        )
        return jsonify(rooms)

    @app.get("/qr-code")
    def qr_code() -> Any:
        caller = staff()
        return jsonify(
            {"qrCode": system().qr.issue(caller.store_id), "storeId": caller.store_id}
        )

    # ------------------------------------------------------------------
    # Staff console
    # ------------------------------------------------------------------
    @app.route("/contracts", methods=["GET", "POST"])
    def contracts() -> Any:
        caller = staff()
        if request.method == "POST":
            payload = _json_body()
            contract = system().open_contract(
                store_id=caller.store_id,
                dog_id=_int_field(payload, "dog_id", "dogId"),
                contract_type=payload.get("contract_type") or "",
                course_name=payload.get("course_name"),
                total_sessions=_int_field(payload, "total_sessions", required=False),
                remaining_sessions=_int_field(payload, "remaining_sessions", required=False),
                monthly_sessions=_int_field(payload, "monthly_sessions", required=False),
                valid_until=payload.get("valid_until"),
            )
            return jsonify(contract), 201
        dog_id = _int_field(request.args, "dog_id", "dogId")
        return jsonify(system().list_contracts(store_id=caller.store_id, dog_id=dog_id))

    @app.route("/contracts/<int:contract_id>", methods=["GET", "PUT", "DELETE"])
    def contract_detail(contract_id: int) -> Any:
        caller = staff()
        if request.method == "PUT":
            payload = _json_body()
            contract = system().update_contract(
                contract_id,
                store_id=caller.store_id,
                contract_type=payload.get("contract_type"),
                course_name=payload.get("course_name"),
                total_sessions=_int_field(payload, "total_sessions", required=False),
                remaining_sessions=_int_field(payload, "remaining_sessions", required=False),
                monthly_sessions=_int_field(payload, "monthly_sessions", required=False),
                valid_until=payload.get("valid_until"),
            )
            return jsonify(contract)
        if request.method == "DELETE":
            system().delete_contract(contract_id, store_id=caller.store_id)
            return jsonify({"message": "Contract deleted"})
        return jsonify(system().get_contract(contract_id, store_id=caller.store_id))

    @app.route("/hotel-rooms", methods=["GET", "POST"])
    def hotel_rooms() -> Any:
        if request.method == "POST":
            caller = store_admin()
            payload = _json_body()
            room = system().create_hotel_room(
                store_id=caller.store_id,
                room_name=payload.get("room_name") or "",
                room_size=payload.get("room_size") or "",
                capacity=_int_field(payload, "capacity", required=False) or 1,
                enabled=bool(payload.get("enabled", True)),
                display_order=_int_field(payload, "display_order", required=False) or 0,
            )
            return jsonify(room), 201
        return jsonify(system().list_hotel_rooms(store_id=staff().store_id))

    @app.put("/hotel-rooms/<int:room_id>")
    def update_hotel_room(room_id: int) -> Any:
        caller = store_admin()
        payload = _json_body()
        room = system().update_hotel_room(
            room_id,
            store_id=caller.store_id,
            room_name=payload.get("room_name"),
            room_size=payload.get("room_size"),
            capacity=_int_field(payload, "capacity", required=False),
            enabled=payload.get("enabled"),
            display_order=_int_field(payload, "display_order", required=False),
        )
        return jsonify(room)

    @app.delete("/hotel-rooms/<int:room_id>")
    def delete_hotel_room(room_id: int) -> Any:
        caller = store_admin()
        outcome = system().delete_hotel_room(room_id, store_id=caller.store_id)
        return jsonify({"message": f"Hotel room {outcome}", "outcome": outcome})

    @app.route("/store-settings", methods=["GET", "PUT"])
    def store_settings() -> Any:
        caller = staff()
        if request.method == "PUT":
            payload = _json_body()
            max_capacity = payload.get("max_capacity")
            if max_capacity is not None and not isinstance(max_capacity, int):
                raise ValidationError("max_capacity must be an integer of at least 1")
            settings_row = system().update_store_settings(
                caller.store_id,
                max_capacity=max_capacity,
                hotel_checkin_time=payload.get("hotel_checkin_time"),
                hotel_checkout_time=payload.get("hotel_checkout_time"),
                business_hours=payload.get("business_hours"),
                closed_days=payload.get("closed_days"),
            )
            return jsonify(settings_row)
        return jsonify(system().get_store_settings(caller.store_id))

    return app
