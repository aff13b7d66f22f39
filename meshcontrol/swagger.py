"""API documentation pages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

SPEC_URL = "/swagger/v1/openapiv2.json"
_ASSET_BASE = "https://unpkg.com/swagger-ui-dist@3"
_MOUNT_ID = "swagger-ui"

_VIEWER_OPTIONS = {
    "url": SPEC_URL,
    "dom_id": "#" + _MOUNT_ID,
    "deepLinking": True,
}


def _boot_script() -> str:
    options = json.dumps(_VIEWER_OPTIONS)
    return (
        'window.addEventListener("load", function () {\n'
        f"  var options = {options};\n"
        "  options.presets = [SwaggerUIBundle.presets.apis,"
        " SwaggerUIBundle.SwaggerUIStandalonePreset];\n"
        "  options.plugins = [SwaggerUIBundle.plugins.DownloadUrl];\n"
        "  window.ui = SwaggerUIBundle(options);\n"
        "});"
    )


def _render_page() -> str:
    head = "\n".join(
        [
            f'<link rel="stylesheet" type="text/css" href="{_ASSET_BASE}/swagger-ui.css">',
            f'<script src="{_ASSET_BASE}/swagger-ui-standalone-preset.js"></script>',
            f'<script src="{_ASSET_BASE}/swagger-ui-bundle.js" charset="UTF-8"></script>',
        ]
    )
    body = f'<div id="{_MOUNT_ID}"></div>\n<script>\n{_boot_script()}\n</script>'
    return f"<html>\n<head>\n{head}\n</head>\n<body>\n{body}\n</body>\n</html>"


@dataclass
class HttpResponse:
    """A complete HTTP response: status, content type and body."""

    status: int
    content_type: str
    body: bytes = field(default=b"")


def swagger_ui() -> HttpResponse:
    """Return the interactive API documentation page."""
    return HttpResponse(200, "text/html; charset=utf-8", _render_page().encode("utf-8"))


def swagger_api_v1(spec: bytes | str) -> HttpResponse:
    """Return the OpenAPI document for version 1 of the API."""
    body = spec.encode("utf-8") if isinstance(spec, str) else bytes(spec)
    return HttpResponse(200, "application/json; charset=utf-8", body)