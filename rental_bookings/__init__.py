import atexit
import os

from flask import Flask, jsonify

from .controllers.bookings import bp as bookings_bp
from .controllers.staff import bp as staff_bp
from .exceptions import BookingEngineError
from .models.store import Store
from .services.engine import build_engine
from .services.gateway import RazorpayGateway
from .utils import constants as C


def _env_config() -> dict:
    return {
        "SECRET_KEY": os.environ.get("FLASK_SECRET_KEY", "dev-secret-change-me"),
        "PLATFORM_FEE_RATE": os.environ.get("PLATFORM_FEE_RATE", C.DEFAULT_PLATFORM_FEE_RATE),
        "PENDING_TIMEOUT_MINUTES": int(os.environ.get("PENDING_TIMEOUT_MINUTES", C.DEFAULT_PENDING_TIMEOUT_MINUTES)),
        "REFUND_POLL_INTERVAL_SECONDS": int(os.environ.get("REFUND_POLL_INTERVAL_SECONDS",
                                                           C.DEFAULT_REFUND_POLL_INTERVAL_SECONDS)),
        "GATEWAY_MAX_RETRIES": int(os.environ.get("GATEWAY_MAX_RETRIES", C.DEFAULT_GATEWAY_MAX_RETRIES)),
        "GATEWAY_BACKOFF_SECONDS": float(os.environ.get("GATEWAY_BACKOFF_SECONDS", C.DEFAULT_GATEWAY_BACKOFF_SECONDS)),
        "CURRENCY": os.environ.get("CURRENCY", C.DEFAULT_CURRENCY),
        "MARKET_TIMEZONE": os.environ.get("MARKET_TIMEZONE", C.DEFAULT_MARKET_TIMEZONE),
        "RZP_KEY_ID": os.environ.get("RZP_KEY_ID", "rzp_test_DUMMYID"),
        "RZP_KEY_SECRET": os.environ.get("RZP_KEY_SECRET", "DUMMYSECRET"),
        "WEBHOOK_SECRET": os.environ.get("WEBHOOK_SECRET", "DUMMYWEBHOOKSECRET"),
        "DATA_PATH": os.environ.get("DATA_PATH"),
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO"),
    }


def create_app(config=None, store=None, gateway=None, executor=None, clock=None, sleep=None):
    """
    Application factory. Collaborators default to the process store and the
    Razorpay gateway; tests pass their own.
    """
    app = Flask(__name__)
    app.config.update(_env_config())
    app.config.update(config or {})
    app.logger.setLevel(app.config["LOG_LEVEL"])

    store = store if store is not None else Store.instance(app.config["DATA_PATH"])
    gateway = gateway or RazorpayGateway(app.config["RZP_KEY_ID"], app.config["RZP_KEY_SECRET"])
    engine = build_engine(app.config, store, gateway, executor=executor, clock=clock, sleep=sleep)
    app.extensions["rental_bookings"] = engine
    # in-flight refund submissions finish before exit
    atexit.register(engine.refunds.close)

    app.register_blueprint(bookings_bp)
    app.register_blueprint(staff_bp)

    @app.errorhandler(BookingEngineError)
    def handle_engine_error(err: BookingEngineError):
        if err.status_code >= 500:
            app.logger.error("%s: %s", type(err).__name__, err.message)
        return jsonify(err.to_dict()), err.status_code

    return app
