import hmac

from fastapi import APIRouter, Request, Response
from fastapi.security.utils import get_authorization_scheme_param

from bookflow.domain.errors import NotFoundError, ValidationError
from bookflow.infra.metrics import metrics as default_metrics

router = APIRouter()


def _authorized(request: Request, token: str) -> bool:
    scheme, presented = get_authorization_scheme_param(request.headers.get("Authorization"))
    if scheme.lower() != "bearer" or not presented:
        return False
    return hmac.compare_digest(presented, token)


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request) -> Response:
    metrics_client = getattr(request.app.state, "metrics", None) or default_metrics
    if not metrics_client.enabled:
        raise NotFoundError("Metrics disabled")

    app_settings = getattr(request.app.state, "app_settings", None)
    token = getattr(app_settings, "metrics_token", None)
    if token and not _authorized(request, token):
        raise ValidationError("Metrics token required", title="Unauthorized", status_code=401)

    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
