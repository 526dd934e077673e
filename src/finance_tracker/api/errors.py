from fastapi import HTTPException

from finance_tracker.errors import UpstreamServiceError


def upstream_http_error(exc: UpstreamServiceError) -> HTTPException:
    status_code = 504 if exc.timed_out else 502
    return HTTPException(status_code=status_code, detail=exc.message)


def not_found(kind: str, identifier: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{kind} '{identifier}' not found")
