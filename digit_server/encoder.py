"""Wire format for inference results.

The canvas page scrapes the prediction out of ``<resultado>`` tags, one per
result cell, so the body is just those fragments concatenated. Cell text is
HTML-escaped so a value can never close the tag early.
"""

from __future__ import annotations

import html
from typing import Any, Sequence

from aiohttp import web

RESULT_TAG = "resultado"
CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return html.escape(str(value))


def encode_result(rows: Sequence[Sequence[Any]]) -> str:
    """Concatenate every cell, row by row, each wrapped in a result tag."""
    return "".join(
        f"<{RESULT_TAG}>{_format_cell(value)}</{RESULT_TAG}>"
        for row in rows
        for value in row
    )


def result_response(rows: Sequence[Sequence[Any]]) -> web.Response:
    return web.Response(
        text=encode_result(rows),
        content_type="text/html",
        headers=CORS_HEADERS,
    )
