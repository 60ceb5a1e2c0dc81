from fastapi import Request
from fastapi.responses import JSONResponse


def error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    """Common error envelope: {"error", "status_code", "request_id", ...extra}."""
    body = {"error": message, "status_code": status_code, **extra}
    rid = getattr(request.state, "request_id", None)
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=status_code, content=body)
