"""Two-pass field parser turning cleaned :class:`PageData` into :class:`LabelData`.

Pass A works on the geometry page: runs left of the template's column boundary
belong to the sender, the rest to the recipient, and labelled values are read
token by token. Pass B runs regular expressions over the cleaned full text for
the global fields, then the neighbourhood heuristic and the product table.

No field lookup is fatal; every miss falls back to a documented default so the
result is always renderable.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from carrier_config import DEFAULT_TEMPLATE, DEFAULT_VOCABULARY, CarrierTemplate, LabelVocabulary
from models import LabelData, PageData, Recipient, Sender, TextItem
from product_table import extract_products

# ---------------------------------------------------------------------------
# Constants & patterns
# ---------------------------------------------------------------------------

TRACKING_RE = re.compile(r"\b([A-Z]{2}\d{9}[A-Z]{2})\b")
TRACKING_ANYWHERE_RE = re.compile(r"([A-Z]{2}\d{9}[A-Z]{2})")
CONTRACT_RE = re.compile(r"Contrato:\s*(\d+)", re.IGNORECASE)
ORDER_ID_RE = re.compile(r"ID\s*pedido[:\s]*([A-Z0-9]{8,})", re.IGNORECASE)

DIGITS_RE = re.compile(r"^\d+$")
CEP_SHAPE_RE = re.compile(r"^\d{5}-?\d{3}$")
TRACKING_SHAPE_RE = re.compile(r"^[A-Z]{2}\d{9}[A-Z]{2}$")
BARE_ID_RE = re.compile(r"^[A-Z0-9]{8,}$")

NEIGHBORHOOD_LOOKAHEAD = 5
SENDER_HEADING_LOOKAHEAD = 3


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def fold(text: str) -> str:
    """Upper-case ``text`` with diacritics removed."""
    decomposed = unicodedata.normalize("NFD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.upper()


def fmt_cep(raw: str) -> str:
    if not raw:
        return ""
    digits = re.sub(r"\D", "", raw)
    if len(digits) != 8:
        return digits
    return f"{digits[:5]}-{digits[5:]}"


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _strip_trailing_commas(text: str) -> str:
    return re.sub(r",\s*$", "", text.strip()).strip()


def _label_re(vocabulary: LabelVocabulary) -> re.Pattern[str]:
    names = sorted({fold(label) for label in vocabulary.field_labels}, key=len, reverse=True)
    return re.compile(r"^(" + "|".join(re.escape(name) for name in names) + r")\s*:\s*(.*)$")


def _keyword_re(keywords: Sequence[str]) -> re.Pattern[str] | None:
    folded = [re.escape(fold(word)) for word in keywords if word]
    if not folded:
        return None
    return re.compile(r"(?<!\w)(?:" + "|".join(folded) + r")(?!\w)")


# ---------------------------------------------------------------------------
# Pass A: column tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnToken:
    text: str
    label: str | None = None


def tokenize_column(items: Sequence[TextItem], label_re: re.Pattern[str]) -> list[ColumnToken]:
    """Turn runs into label/value tokens; ``"NOME: Maria"`` yields two tokens."""
    tokens: list[ColumnToken] = []
    for item in items:
        text = item.text.strip()
        if not text:
            continue
        match = label_re.match(fold(text))
        if not match:
            tokens.append(ColumnToken(text=text))
            continue
        tokens.append(ColumnToken(text=text, label=match.group(1)))
        colon = text.find(":")
        remainder = text[colon + 1 :].strip() if colon >= 0 else ""
        if remainder:
            tokens.append(ColumnToken(text=remainder))
    return tokens


def value_after_label(tokens: Sequence[ColumnToken], label: str) -> str:
    wanted = fold(label)
    for idx, token in enumerate(tokens):
        if token.label != wanted:
            continue
        for follower in tokens[idx + 1 :]:
            if follower.label is None and follower.text:
                return follower.text
    return ""


def values_after_label(tokens: Sequence[ColumnToken], label: str, limit: int) -> list[str]:
    """Collect up to ``limit`` values after ``label``, stopping at the next label."""
    wanted = fold(label)
    for idx, token in enumerate(tokens):
        if token.label != wanted:
            continue
        values: list[str] = []
        for follower in tokens[idx + 1 :]:
            if follower.label is not None:
                break
            value = _strip_trailing_commas(follower.text)
            if value:
                values.append(value)
            if len(values) >= limit:
                break
        return values
    return []


def split_columns(
    items: Sequence[TextItem], boundary: float
) -> tuple[list[TextItem], list[TextItem]]:
    sender = [item for item in items if item.x < boundary]
    recipient = [item for item in items if item.x >= boundary]
    return sender, recipient


def recipient_street(raw_address: str) -> str:
    parts = [part.strip() for part in raw_address.split(",")]
    if len(parts) >= 2:
        return f"{parts[0]}, {parts[1]}"
    return raw_address


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineRule:
    """Named predicate over a candidate line."""

    name: str
    matches: Callable[[str], bool]


@dataclass(frozen=True)
class FieldRule:
    """Ordered (predicate, transform) pair used to recover a field from candidates."""

    name: str
    predicate: Callable[[str], bool]
    transform: Callable[[str], str]


def apply_field_rules(rules: Sequence[FieldRule], candidates: Sequence[str], fallback: str) -> str:
    for candidate in candidates:
        text = candidate.strip()
        if not text:
            continue
        for rule in rules:
            if rule.predicate(text):
                value = rule.transform(text)
                if value:
                    return value
    return fallback


def first_rule_hit(rules: Sequence[LineRule], line: str) -> str | None:
    for rule in rules:
        if rule.matches(line):
            return rule.name
    return None


def _is_street_line(prefixes: Sequence[str]) -> Callable[[str], bool]:
    lowered = tuple(prefix.lower() for prefix in prefixes if prefix)

    def matches(line: str) -> bool:
        head = line.strip().lower()
        return any(head.startswith(prefix + " ") for prefix in lowered)

    return matches


def neighborhood_exclusions(
    vocabulary: LabelVocabulary, known_values: set[str]
) -> list[LineRule]:
    keyword_re = _keyword_re(vocabulary.non_neighborhood_keywords)
    return [
        LineRule("too-short", lambda line: len(line.strip()) < 3),
        LineRule("digits", lambda line: bool(DIGITS_RE.match(line.strip()))),
        LineRule("cep", lambda line: bool(CEP_SHAPE_RE.match(line.strip()))),
        LineRule("tracking", lambda line: bool(TRACKING_SHAPE_RE.match(line.strip()))),
        LineRule("bare-id", lambda line: bool(BARE_ID_RE.match(line.strip()))),
        LineRule(
            "keyword",
            lambda line: keyword_re is not None and bool(keyword_re.search(fold(line))),
        ),
        LineRule("known-value", lambda line: line.strip().lower() in known_values),
        LineRule("street", _is_street_line(vocabulary.street_prefixes)),
    ]


def sender_name_rules(vocabulary: LabelVocabulary) -> list[FieldRule]:
    label_re = _label_re(vocabulary)
    label_words = {fold(label) for label in vocabulary.field_labels}
    street = _is_street_line(vocabulary.street_prefixes)

    def plain_value(line: str) -> bool:
        stripped = line.strip()
        words = fold(stripped).split()
        if not words:
            return False
        return (
            len(stripped) >= 2
            and words[0].rstrip(":") not in label_words
            and not label_re.match(fold(stripped))
            and not DIGITS_RE.match(stripped)
            and not CEP_SHAPE_RE.match(stripped)
            and not street(stripped)
        )

    def inline_value(line: str) -> bool:
        match = label_re.match(fold(line))
        return bool(match and match.group(1) in {"REMETENTE", "NOME"} and match.group(2).strip())

    def after_colon(line: str) -> str:
        return _strip_trailing_commas(line.split(":", 1)[1]) if ":" in line else ""

    return [
        FieldRule("plain-value", plain_value, lambda line: _collapse(_strip_trailing_commas(line))),
        FieldRule("inline-label", inline_value, after_colon),
    ]


# ---------------------------------------------------------------------------
# Pass B: global fields
# ---------------------------------------------------------------------------


def find_tracking_code(full_text: str) -> str:
    match = TRACKING_RE.search(full_text) or TRACKING_ANYWHERE_RE.search(full_text)
    return match.group(1) if match else ""


def find_contract(full_text: str) -> str:
    match = CONTRACT_RE.search(full_text)
    return match.group(1) if match else ""


def find_order_id(full_text: str) -> str:
    match = ORDER_ID_RE.search(full_text)
    return match.group(1) if match else ""


def find_modality(full_text: str, modalities: Sequence[str]) -> str:
    entries = [entry for entry in modalities if entry]
    ordered = sorted(entries, key=len, reverse=True)
    pattern = re.compile(
        r"\b("
        + "|".join(re.escape(entry).replace(r"\ ", r"\s+") for entry in ordered)
        + r")\b",
        re.IGNORECASE,
    )
    match = pattern.search(full_text)
    if not match:
        return entries[0]
    found = _collapse(match.group(1)).upper()
    for entry in entries:
        if entry.upper() == found:
            return entry
    return entries[0]


def _sender_heading_lines(lines: Sequence[str]) -> list[str]:
    for idx, line in enumerate(lines):
        if fold(line).startswith("REMETENTE"):
            return list(lines[idx : idx + 1 + SENDER_HEADING_LOOKAHEAD])
    return []


def find_neighborhood(
    lines: Sequence[str],
    street_raw: str,
    exclusions: Sequence[LineRule],
    cities: Sequence[str],
) -> str:
    street_head = street_raw.split(",")[0].strip().lower()
    if street_head:
        for idx, line in enumerate(lines):
            if street_head not in line.lower():
                continue
            for candidate in lines[idx + 1 : idx + 1 + NEIGHBORHOOD_LOOKAHEAD]:
                if first_rule_hit(exclusions, candidate) is None:
                    return candidate.strip()
            break

    known_cities = {city.strip().lower() for city in cities if city.strip()}
    for line in lines:
        if first_rule_hit(exclusions, line) is not None:
            continue
        if line.strip().lower() in known_cities:
            continue
        return line.strip()
    return ""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_page_data(
    page_data: PageData,
    vocabulary: LabelVocabulary = DEFAULT_VOCABULARY,
    template: CarrierTemplate = DEFAULT_TEMPLATE,
) -> LabelData:
    full_text = page_data.full_text
    lines = page_data.all_lines

    tracking_code = find_tracking_code(full_text)
    contract = find_contract(full_text)
    modality = find_modality(full_text, vocabulary.modalities)
    order_id = find_order_id(full_text)

    # Pass A
    label_re = _label_re(vocabulary)
    sender_items, recipient_items = split_columns(page_data.page2_items, template.column_boundary)
    sender_tokens = tokenize_column(sender_items, label_re)
    recipient_tokens = tokenize_column(recipient_items, label_re)

    recipient_name = value_after_label(recipient_tokens, "NOME") or template.recipient_name_placeholder
    recipient_address_raw = value_after_label(recipient_tokens, "ENDEREÇO")
    street = recipient_street(recipient_address_raw)
    recipient_city = value_after_label(recipient_tokens, "MUNICÍPIO")
    recipient_state = value_after_label(recipient_tokens, "UF")
    recipient_cep = fmt_cep(value_after_label(recipient_tokens, "CEP"))

    sender_candidates = [value_after_label(sender_tokens, "NOME"), *_sender_heading_lines(lines)]
    sender_name = apply_field_rules(
        sender_name_rules(vocabulary), sender_candidates, template.sender_name_placeholder
    )
    sender_address = ", ".join(values_after_label(sender_tokens, "ENDEREÇO", limit=2))
    sender_cep = fmt_cep(value_after_label(sender_tokens, "CEP"))
    sender_city = value_after_label(sender_tokens, "MUNICÍPIO") or template.sender_city_fallback
    sender_state = value_after_label(sender_tokens, "UF") or template.sender_state_fallback

    # Pass B: neighbourhood has no label in the source documents.
    known_values = {
        value.strip().lower()
        for value in (
            recipient_name,
            street,
            recipient_city,
            recipient_state,
            sender_name,
            sender_address,
            sender_city,
            sender_state,
            tracking_code,
            contract,
            order_id,
        )
        if value and value.strip()
    }
    neighborhood = find_neighborhood(
        lines,
        recipient_address_raw,
        neighborhood_exclusions(vocabulary, known_values),
        [recipient_city, sender_city],
    )

    prods, total_qtd, total_val = extract_products(full_text, vocabulary.color_words)

    return LabelData(
        tracking_code=tracking_code,
        contract=contract,
        order_id=order_id,
        modality=modality,
        recipient=Recipient(
            name=recipient_name,
            street=street,
            neighborhood=neighborhood,
            city=recipient_city,
            state=recipient_state,
            postal_code=recipient_cep,
        ),
        sender=Sender(
            name=sender_name,
            address=sender_address,
            city=sender_city,
            state=sender_state,
            postal_code=sender_cep,
        ),
        prods=prods,
        total_qtd=total_qtd,
        total_val=total_val,
    )
