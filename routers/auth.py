import hmac
import logging
from typing import Optional, Tuple

from fastapi import HTTPException, Request


def extract_secret(request: Request, body_secret: Optional[str] = None) -> Tuple[str, str]:
    """Extract the shared secret from the bearer token, header, query or body, in that order."""
    authorization = request.headers.get("authorization", "").strip()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip(), "bearer"

    header_secret = request.headers.get("x-job-secret", "").strip()
    if header_secret:
        return header_secret, "header"

    query_secret = request.query_params.get("secret", "").strip()
    if query_secret:
        return query_secret, "query"

    if body_secret:
        body_secret = str(body_secret).strip()
        if body_secret:
            return body_secret, "body"

    return "", "missing"


def ensure_request_authorized(
    request: Request,
    job_secret: str,
    logger: logging.Logger,
    *,
    body_secret: Optional[str] = None,
    context_path: str = "",
) -> str:
    """
    Validate auth using a shared secret.
    An empty job_secret disables the check.
    """
    endpoint = context_path or request.url.path
    if not job_secret:
        return "not_required"

    provided, source = extract_secret(request, body_secret=body_secret)
    if not hmac.compare_digest(provided.encode("utf-8"), job_secret.encode("utf-8")):
        logger.warning(
            "Unauthorized on %s (source=%s, client=%s)",
            endpoint,
            source,
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.debug("Auth OK on %s (source=%s)", endpoint, source)
    return source
