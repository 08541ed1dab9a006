from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": jsonable_encoder(data),
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": jsonable_encoder(data or {}),
            "error": error_code,
            "message": message,
        }
    )


def billing_error_response(exc):
    """Envelope for any BillingError; the HTTP status comes from the exception class."""
    return error_response(exc.code, status=exc.status_code, message=exc.message, data=exc.details)
