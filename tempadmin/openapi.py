from __future__ import annotations

"""OpenAPI exposure helper: serves the schema as YAML at /openapi.yaml."""

from datetime import datetime, timezone

import yaml
from fastapi import FastAPI, Request, Response

__all__ = ["install_openapi_route"]


def install_openapi_route(app: FastAPI) -> None:  # noqa: D401
    """Attach a YAML OpenAPI exporter at /openapi.yaml.

    The dashboard build generates its typed client from this file. The route
    stays out of the schema itself (``include_in_schema=False``) and is served
    even when the interactive docs are disabled in production.
    """

    @app.get("/openapi.yaml", include_in_schema=False)
    async def _openapi_yaml(_: Request) -> Response:  # noqa: D401, WPS430
        spec = app.openapi()
        yaml_str = yaml.safe_dump(spec, sort_keys=False)
        date_comment = f"# generated: {datetime.now(timezone.utc).date().isoformat()}\n"
        return Response(
            content=date_comment + yaml_str,
            media_type="application/x-yaml",
            headers={"Cache-Control": "no-cache"},
        )
