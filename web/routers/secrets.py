"""Secret endpoints.

- GET /v1/secrets/{type}/{name} - Raw secret value as text/plain
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as http_status
from fastapi.responses import PlainTextResponse

from layerbuild.secrets import SecretError, SecretProvider, lookup_provider
from web.deps import get_providers

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{kind}/{name}", response_class=PlainTextResponse)
def get_secret(
    kind: str,
    name: str,
    providers: dict[str, SecretProvider] = Depends(get_providers),
) -> PlainTextResponse:
    """Serve a registered secret.

    Args:
        kind: Provider kind (file or env).
        name: Secret name as declared in the build file.

    Raises:
        HTTPException: 400 if the provider or secret cannot be resolved.
    """
    try:
        provider = lookup_provider(providers, kind)
        value = provider.get_secret(name)
    except SecretError as e:
        logger.warning("Secret request %s/%s failed: %s", kind, name, e)
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        ) from None

    logger.debug("Served secret %s/%s", kind, name)
    return PlainTextResponse(value)
