"""Inference query for the in-database digit classifier.

The model was trained on a table with one column per pixel (PX1..PX784), so
scoring a drawing means naming every one of those features in the
``USING`` clause of ``PREDICTION()``. The SQL text only depends on the model
name and is built once per builder; each request only supplies a fresh bind
dict. Slot ``PX<n>`` is always bound to pixel index ``n - 1``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from digit_server.pixels import PIXEL_COUNT, PixelVector

log = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "DEEP_LEARNING_MODEL"

# Unquoted Oracle identifier, optionally schema-qualified.
_IDENTIFIER_RE = re.compile(r"[A-Za-z][A-Za-z0-9_$#]{0,127}(\.[A-Za-z][A-Za-z0-9_$#]{0,127})?")


class QueryExecutionFailure(Exception):
    """The database rejected or failed to run the inference query."""


def slot_name(index: int) -> str:
    """Model feature name for 1-based pixel slot ``index``."""
    return f"PX{index}"


def bind_name(index: int) -> str:
    """Bind variable name for 1-based pixel slot ``index``."""
    return f"px{index}"


def build_template(model_name: str, include_probability: bool = False) -> str:
    """Return the scoring SQL for ``model_name``.

    Raises:
        ValueError: ``model_name`` is not a plain Oracle identifier.
    """
    if not _IDENTIFIER_RE.fullmatch(model_name):
        raise ValueError(f"Invalid model name: {model_name!r}")

    using = ", ".join(
        f":{bind_name(i)} AS {slot_name(i)}" for i in range(1, PIXEL_COUNT + 1)
    )
    columns = [f"PREDICTION({model_name} USING {using}) AS pred"]
    if include_probability:
        columns.append(f"PREDICTION_PROBABILITY({model_name} USING {using}) AS prob")
    return f"SELECT {', '.join(columns)} FROM dual"


@dataclass(frozen=True)
class InferenceQuery:
    """Ready-to-execute SQL plus its named binds."""

    sql: str
    binds: dict[str, int | float]


class InferenceQueryBuilder:
    """Binds pixel vectors to the constant scoring template."""

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL_NAME,
        include_probability: bool = False,
    ) -> None:
        self._model_name = model_name
        self._include_probability = include_probability
        self._sql = build_template(model_name, include_probability)
        self._bind_names = tuple(bind_name(i) for i in range(1, PIXEL_COUNT + 1))

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def sql(self) -> str:
        return self._sql

    def build(self, pixels: PixelVector) -> InferenceQuery:
        return InferenceQuery(
            sql=self._sql,
            binds=dict(zip(self._bind_names, pixels)),
        )


async def run_inference(connection: Any, query: InferenceQuery) -> list[tuple]:
    """Execute ``query`` on ``connection`` and return every result row.

    Raises:
        QueryExecutionFailure: wraps any driver or model error.
    """
    try:
        with connection.cursor() as cursor:
            await cursor.execute(query.sql, query.binds)
            rows = await cursor.fetchall()
    except Exception as exc:
        raise QueryExecutionFailure(str(exc)) from exc
    log.debug("Result from db: %s", rows)
    return [tuple(row) for row in rows]
