import json
import os

import azure.functions as func


def cors_headers():
    return {
        "Access-Control-Allow-Origin": os.getenv("ALLOWED_ORIGIN", ""),
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }


def respond(body=None, status=200):
    # ObjectIds and datetimes go out as strings
    return func.HttpResponse(
        json.dumps(body, default=str) if body is not None else "",
        status_code=status,
        mimetype="application/json",
        headers=cors_headers()
    )


def error_response(err):
    """Render an engine error (anything with http_status + to_dict) as JSON."""
    return respond(err.to_dict(), status=err.http_status)


def options_response():
    return func.HttpResponse("", status_code=204, headers=cors_headers())


def get_json_body(req: func.HttpRequest) -> dict | None:
    try:
        body = req.get_json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None
