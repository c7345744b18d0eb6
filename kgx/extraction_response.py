from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from json_repair import repair_json

from kgx.extraction_config import ExtractionPolicy
from kgx.extraction_errors import JsonRecoveryError, ResponseExtractionError
from kgx.extraction_selectors import SelectorRole, candidates_for

LOGGER = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)
_EMPTY_VALUE_RE = re.compile(r'"[^"\\]+"\s*:\s*(?:\[\s*\]|""|\{\s*\})')
_PREVIEW_CHARS = 280

_EXCLUDE_USER_TURN_JS = """
(node, selectors) => selectors.some((selector) => {
    try {
        return node.matches(selector) || node.closest(selector) !== null;
    } catch (error) {
        return false;
    }
})
"""


class CandidateStrategy:
    sentinel = "sentinel"
    fence = "fence"
    balanced_object = "balanced_object"
    brace_span = "brace_span"


@dataclass(frozen=True)
class JsonCandidate:
    strategy: str
    text: str


@dataclass
class ExtractedResponse:
    payload: Any
    strategy: str
    selector: str | None
    text_length: int
    containers_seen: int = 0
    repaired: bool = False


@dataclass
class _ScanState:
    selector: str | None = None
    text_length: int = 0
    text_preview: str = ""
    containers_seen: int = 0


def _sentinel_candidates(text: str, policy: ExtractionPolicy) -> list[str]:
    pattern = re.compile(re.escape(policy.sentinel_start) + r"(.*?)" + re.escape(policy.sentinel_end), re.DOTALL)
    found = []
    for match in pattern.finditer(text):
        body = match.group(1)
        start = body.find("{")
        end = body.rfind("}")
        if start == -1 or end <= start:
            continue
        found.append(body[start : end + 1])
    return found


def _fence_candidates(text: str) -> list[str]:
    found = []
    for match in _FENCE_RE.finditer(text):
        body = match.group(1).strip()
        if body.startswith(("{", "[")):
            found.append(body)
    return found


def _brace_span(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def balanced_object_at(text: str, start: int) -> str | None:
    """Return the quote-aware balanced ``{...}`` object starting at ``start``, if it closes."""
    if start < 0 or start >= len(text) or text[start] != "{":
        return None
    depth = 0
    in_str = False
    esc = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def trim_schema_skeleton(candidate: str, marker: str) -> str:
    """Drop an echoed empty schema skeleton that precedes the real payload.

    When the prompt echo leaks into the response the first object is usually the
    template (``"nodes": []`` and friends). The real graph then starts at the
    object that owns the second occurrence of ``marker``.
    """
    first = candidate.find(marker)
    if first == -1:
        return candidate
    second = candidate.find(marker, first + len(marker))
    if second == -1:
        return candidate
    if not _EMPTY_VALUE_RE.search(candidate[:second]):
        return candidate
    opening = candidate.rfind("{", 0, second)
    if opening == -1:
        return candidate
    trimmed = balanced_object_at(candidate, opening)
    if trimmed is not None:
        return trimmed
    end = candidate.rfind("}")
    if end <= opening:
        return candidate
    return candidate[opening : end + 1]


def balanced_objects(text: str) -> list[str]:
    """Every top-level balanced object in ``text``, left to right."""
    found: list[str] = []
    index = text.find("{")
    while index != -1:
        body = balanced_object_at(text, index)
        if body is None:
            index = text.find("{", index + 1)
            continue
        found.append(body)
        index = text.find("{", index + len(body))
    return found


def collect_candidates(text: str, policy: ExtractionPolicy) -> list[JsonCandidate]:
    raw: list[JsonCandidate] = []
    raw.extend(JsonCandidate(CandidateStrategy.sentinel, body) for body in _sentinel_candidates(text, policy))
    raw.extend(JsonCandidate(CandidateStrategy.fence, body) for body in _fence_candidates(text))
    raw.extend(JsonCandidate(CandidateStrategy.balanced_object, body) for body in balanced_objects(text))
    span = _brace_span(text)
    if span is not None:
        raw.append(JsonCandidate(CandidateStrategy.brace_span, span))

    kept: list[JsonCandidate] = []
    seen: set[str] = set()
    for candidate in raw:
        trimmed = trim_schema_skeleton(candidate.text, policy.skeleton_key_marker)
        if len(trimmed) < policy.substantial_length or trimmed in seen:
            continue
        seen.add(trimmed)
        kept.append(JsonCandidate(candidate.strategy, trimmed))
    return kept


def select_longest(candidates: list[JsonCandidate]) -> JsonCandidate | None:
    best: JsonCandidate | None = None
    for candidate in candidates:
        if best is None or len(candidate.text) > len(best.text):
            best = candidate
    return best


def _parses_strictly(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def select_candidate(candidates: list[JsonCandidate]) -> JsonCandidate | None:
    """Longest candidate that parses as-is; the longest overall only when none do.

    A brace span that straddles several objects is always the longest string, but
    it is not one document, so it only wins when nothing parses without repair.
    """
    return select_longest([candidate for candidate in candidates if _parses_strictly(candidate.text)]) or select_longest(
        candidates
    )


def parse_json_payload(text: str) -> tuple[Any, bool]:
    """Parse strictly, then fall back to structural repair. Returns ``(payload, repaired)``."""
    try:
        return json.loads(text), False
    except json.JSONDecodeError:
        pass

    try:
        repaired = repair_json(text, return_objects=True)
    except (ValueError, TypeError, RecursionError) as exc:
        raise JsonRecoveryError(
            "unable to repair JSON payload",
            details=str(exc),
            diagnostics={"text_length": len(text), "text_preview": text[:_PREVIEW_CHARS]},
        ) from exc

    if not isinstance(repaired, (dict, list)) or not repaired:
        raise JsonRecoveryError(
            "unable to repair JSON payload",
            details="repair produced no structured value",
            diagnostics={"text_length": len(text), "text_preview": text[:_PREVIEW_CHARS]},
        )
    return repaired, True


def _recover_from_texts(texts: list[str], policy: ExtractionPolicy) -> tuple[Any, JsonCandidate, bool, str] | None:
    pooled: list[JsonCandidate] = []
    origin: dict[int, str] = {}
    for text in texts:
        for candidate in collect_candidates(text, policy):
            origin[id(candidate)] = text
            pooled.append(candidate)
    best = select_candidate(pooled)
    if best is None:
        return None
    payload, repaired = parse_json_payload(best.text)
    return payload, best, repaired, origin[id(best)]


def recover_json_from_text(text: str, policy: ExtractionPolicy) -> tuple[Any, JsonCandidate, bool] | None:
    recovered = _recover_from_texts([text], policy)
    if recovered is None:
        return None
    payload, candidate, repaired, _ = recovered
    return payload, candidate, repaired


def _looks_like_json(text: str, policy: ExtractionPolicy) -> bool:
    return "{" in text or "```" in text or policy.sentinel_start in text


async def _is_user_turn(element: Any, user_selectors: tuple[str, ...]) -> bool:
    try:
        return bool(await element.evaluate(_EXCLUDE_USER_TURN_JS, list(user_selectors)))
    except Exception:
        return False


async def _container_texts(container: Any) -> list[str]:
    texts: list[str] = []
    for selector in candidates_for(SelectorRole.code_block):
        blocks = container.locator(selector)
        count = await blocks.count()
        if count == 0:
            continue
        for index in range(count):
            block = await blocks.nth(index).inner_text()
            if block and block.strip():
                texts.append(block)
        break
    try:
        texts.append(await container.inner_text())
    except Exception:
        LOGGER.debug("inner_text failed for response container", exc_info=True)
    content = await container.text_content()
    if content:
        texts.append(content)
    return texts


async def _model_containers(page: Any) -> tuple[str | None, list[Any]]:
    user_selectors = candidates_for(SelectorRole.user_turn)
    for selector in candidates_for(SelectorRole.response_container):
        locator = page.locator(selector)
        count = await locator.count()
        if count == 0:
            continue
        containers = []
        for index in range(count):
            element = locator.nth(index)
            if await _is_user_turn(element, user_selectors):
                continue
            containers.append(element)
        if containers:
            return selector, containers
    return None, []


async def _page_text(page: Any) -> str:
    try:
        return await page.inner_text("body")
    except Exception:
        LOGGER.debug("body inner_text failed; falling back to evaluate", exc_info=True)
    text = await page.evaluate("() => document.body ? document.body.innerText : ''")
    return text or ""


async def extract_response(page: Any, policy: ExtractionPolicy) -> ExtractedResponse:
    """Locate the latest model reply on ``page`` and recover its JSON payload."""
    state = _ScanState()
    selector, containers = await _model_containers(page)
    state.selector = selector
    state.containers_seen = len(containers)

    readings: list[tuple[Any, list[str]]] = []
    for container in containers:
        readings.append((container, await _container_texts(container)))

    qualifying = [
        texts
        for _, texts in readings
        if any(_looks_like_json(text, policy) and len(text) >= policy.substantial_length for text in texts)
    ]
    ordered = list(reversed(qualifying)) or [texts for _, texts in reversed(readings)]
    for texts in ordered:
        for text in texts:
            state.text_length = max(state.text_length, len(text))
            state.text_preview = state.text_preview or text[:_PREVIEW_CHARS]
        recovered = _recover_from_texts(texts, policy)
        if recovered is None:
            continue
        payload, candidate, repaired, source = recovered
        return ExtractedResponse(
            payload=payload,
            strategy=candidate.strategy,
            selector=selector,
            text_length=len(source),
            containers_seen=state.containers_seen,
            repaired=repaired,
        )

    body_text = await _page_text(page)
    recovered = recover_json_from_text(body_text, policy)
    if recovered is not None:
        payload, candidate, repaired = recovered
        LOGGER.info("recovered response from page text fallback (strategy=%s)", candidate.strategy)
        return ExtractedResponse(
            payload=payload,
            strategy=candidate.strategy,
            selector="body",
            text_length=len(body_text),
            containers_seen=state.containers_seen,
            repaired=repaired,
        )

    if not state.text_preview:
        state.text_length = len(body_text)
        state.text_preview = body_text[:_PREVIEW_CHARS]
    raise ResponseExtractionError(
        "no JSON payload found in model response",
        details=f"containers_seen={state.containers_seen}",
        diagnostics={
            "selector": state.selector,
            "text_length": state.text_length,
            "text_preview": state.text_preview,
            "containers_seen": state.containers_seen,
        },
    )
