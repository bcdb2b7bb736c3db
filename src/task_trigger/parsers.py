"""Payload parser adapter.

Tasks can be given very different validators: pydantic models, type adapters,
objects with a throwing `parse`/`create`/`validate`/`assert` entry point, or a
plain (possibly async) transform function. `payload_parser` wraps any of them
behind one contract:

    result = await parser.parse(raw)
    if result.ok: use(result.value)
    else: report(result.error)

Validator exceptions never leave `parse`; they come back as a `ParseError`
that keeps the original exception as `cause`.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError


@dataclass(frozen=True, slots=True)
class ParseError:
    """Why a payload was rejected."""

    message: str
    cause: BaseException | None = None
    issues: list[dict[str, object]] = field(default_factory=list)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"message": self.message}
        if self.cause is not None:
            out["cause"] = type(self.cause).__name__
        if self.issues:
            out["issues"] = self.issues
        return out


@dataclass(frozen=True, slots=True)
class ParseResult:
    ok: bool
    value: Any = None
    error: ParseError | None = None


def _issues(exc: ValidationError) -> list[dict[str, object]]:
    # Inputs and contexts can hold arbitrary objects; keep issues JSON-safe.
    return [
        {"loc": list(item["loc"]), "msg": item["msg"], "type": item["type"]}
        for item in exc.errors(include_url=False, include_context=False, include_input=False)
    ]


@dataclass(frozen=True, slots=True)
class PayloadParser:
    """A validator normalised to `parse(raw) -> ParseResult`.

    `kind` records which validator shape was detected; it is informational.
    """

    kind: str
    call: Callable[[Any], Any] = field(repr=False)

    async def parse(self, raw: Any) -> ParseResult:
        try:
            value = self.call(raw)
            if inspect.isawaitable(value):
                value = await value
        except ValidationError as e:
            return ParseResult(
                ok=False,
                error=ParseError(
                    message=f"{e.error_count()} validation error(s)", cause=e, issues=_issues(e)
                ),
            )
        except Exception as e:
            return ParseResult(
                ok=False, error=ParseError(message=str(e) or type(e).__name__, cause=e)
            )
        return ParseResult(ok=True, value=value)


def _identity(raw: Any) -> Any:
    return raw


IDENTITY_PARSER = PayloadParser(kind="identity", call=_identity)


def _narrowing(check: Callable[[Any], Any]) -> Callable[[Any], Any]:
    """Run `check` for its exception only and pass the raw value through."""

    def call(raw: Any) -> Any:
        check(raw)
        return raw

    return call


def _validating(validate: Callable[[Any], Any]) -> Callable[[Any], Any]:
    """`validate` may transform (return a value) or narrow (return None)."""

    def call(raw: Any) -> Any:
        value = validate(raw)
        return raw if value is None else value

    return call


def _method(obj: object, name: str) -> Callable[[Any], Any] | None:
    candidate = getattr(obj, name, None)
    return candidate if callable(candidate) else None


def payload_parser(obj: object) -> PayloadParser:
    """Adapt a validator of any supported shape into a `PayloadParser`.

    Raises:
        TypeError: If `obj` matches none of the supported shapes.
    """

    if obj is None:
        return IDENTITY_PARSER
    if isinstance(obj, PayloadParser):
        return obj
    if isinstance(obj, type) and issubclass(obj, BaseModel):
        return PayloadParser(kind="pydantic-model", call=obj.model_validate)
    if isinstance(obj, TypeAdapter):
        return PayloadParser(kind="pydantic-adapter", call=obj.validate_python)

    if (parse := _method(obj, "parse")) is not None:
        return PayloadParser(kind="parse", call=parse)
    if (create := _method(obj, "create")) is not None:
        return PayloadParser(kind="create", call=create)
    if (validate_sync := _method(obj, "validate_sync")) is not None:
        return PayloadParser(kind="validate", call=_validating(validate_sync))
    if (validate := _method(obj, "validate")) is not None:
        return PayloadParser(kind="validate", call=_validating(validate))
    assert_ = _method(obj, "assert_") or _method(obj, "assert")
    if assert_ is not None:
        return PayloadParser(kind="assert", call=_narrowing(assert_))

    if callable(obj):
        return PayloadParser(kind="function", call=obj)

    raise TypeError(f"Unsupported payload parser: {obj!r}")
