"""
Post-generation grounding: extract rule and card mentions, check them against
the pack vocabulary, and rewrite recognised aliases to canonical names.

nudge() is pure and never raises on odd input text; the worst case is a
summary with no mentions (hit rates of 1).
"""
import asyncio
import json
import logging
import re
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from .pack import parse_json
from .pack_reader import PackFileReader
from .schemas import (
    CardMention,
    NameLookupRow,
    NudgeResult,
    PackState,
    RuleMention,
    ValidationStats,
    ValidationSummary,
)

logger = logging.getLogger(__name__)

RULE_ID_RE = re.compile(r"\b\d{3}(?:\.\d+)*[a-z]?\b")
MIN_CARD_NAME_LENGTH = 4

# Replaced by a space during normalization (typographic quotes included)
_PUNCT_RE = re.compile("[-'\":(),‘’“”]")
_WS_RE = re.compile(r"\s+")
_SEPARATORS = frozenset("-'\":(),‘’“”")
_WORD_CHAR_RE = re.compile(r"[A-Za-z0-9_]")
_SENTENCE_PUNCT = ".,;!?"


def normalize(text: str) -> str:
    """Lowercase, turn -'":(), into spaces, collapse whitespace, trim."""
    text = _WS_RE.sub(" ", (text or "").lower())
    text = _PUNCT_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip()


def _is_word_char(c: str) -> bool:
    return bool(_WORD_CHAR_RE.match(c))


def extract_rule_mentions(text: str) -> List[str]:
    """Rule ids like 305.7 or 702.19c, deduped in first-seen order."""
    seen: Set[str] = set()
    out: List[str] = []
    for m in RULE_ID_RE.finditer(text or ""):
        rule_id = m.group(0)
        if rule_id not in seen:
            seen.add(rule_id)
            out.append(rule_id)
    return out


_END = ""  # trie slot holding (key, canonical, doc_id); never a character


class NameIndex:
    """
    Normalized card names and aliases for one validation call.

    Canonical norms win over aliases. Among canonical norms the last row
    wins; among aliases the first row wins.
    """

    def __init__(self, rows: Iterable[NameLookupRow]):
        self.rows = list(rows)
        self.by_key: Dict[str, Tuple[str, str]] = {}
        for row in self.rows:
            if row.norm:
                self.by_key[row.norm] = (row.canonical, row.doc_id)
        for row in self.rows:
            for alias in row.aliases_norm:
                if alias and alias not in self.by_key:
                    self.by_key[alias] = (row.canonical, row.doc_id)

        # Nested dicts, one level per character
        self._trie: dict = {}
        for key, (canonical, doc_id) in self.by_key.items():
            if len(key) < MIN_CARD_NAME_LENGTH:
                continue
            node = self._trie
            for c in key:
                node = node.setdefault(c, {})
            node[_END] = (key, canonical, doc_id)

    def __contains__(self, key: str) -> bool:
        return key in self.by_key

    def __len__(self) -> int:
        return len(self.by_key)

    def iter_matches(self, text: str, pos: int) -> Iterator[Tuple[int, Tuple[str, str, str]]]:
        """Yield (end, entry) for every key spelled out at pos, shortest first."""
        node = self._trie
        for i in range(pos, len(text)):
            node = node.get(text[i])
            if node is None:
                return
            entry = node.get(_END)
            if entry is not None:
                yield i + 1, entry

    def longest_match(self, text: str, pos: int) -> Optional[Tuple[str, str, str]]:
        """
        Longest key starting at pos with word boundaries on both sides.

        Keys shorter than MIN_CARD_NAME_LENGTH never match.
        """
        if pos > 0 and _is_word_char(text[pos - 1]):
            return None
        best = None
        for end, entry in self.iter_matches(text, pos):
            if end >= len(text) or not _is_word_char(text[end]):
                best = entry
        return best


def find_card_mentions(normalized_text: str, index: NameIndex) -> List[Tuple[str, str, str, int, int]]:
    """
    Greedy longest-match scan over normalized text.

    Advances past a match, or by one character when nothing matches.

    Returns:
        (key, canonical, doc_id, start, end) per match, in text order
    """
    results = []
    pos = 0
    while pos < len(normalized_text):
        match = index.longest_match(normalized_text, pos)
        if match is None:
            pos += 1
            continue
        key, canonical, doc_id = match
        results.append((key, canonical, doc_id, pos, pos + len(key)))
        pos += len(key)
    return results


def find_unknown_words(
    normalized_text: str,
    index: NameIndex,
    spans: Sequence[Tuple[int, int]],
) -> List[str]:
    """
    Single words (>= 4 chars) outside matched spans and not in the index.

    Multi-word unknown names are not detected.
    """
    seen: Set[str] = set()
    out: List[str] = []
    for m in re.finditer(r"\S+", normalized_text):
        start, end = m.span()
        if any(start < s_end and s_start < end for s_start, s_end in spans):
            continue
        word = m.group(0).strip(_SENTENCE_PUNCT)
        if len(word) < MIN_CARD_NAME_LENGTH or word[0].isdigit():
            continue
        if word in index or word in seen:
            continue
        seen.add(word)
        out.append(word)
    return out


def _fold(text: str) -> Tuple[str, List[int]]:
    """
    Lowercase text with every separator run folded to a single space.

    Returns the folded text and, per folded character, the raw index it
    came from, so matches in the folded view map back onto the raw text.
    """
    chars: List[str] = []
    origin: List[int] = []
    in_separator = False
    for i, c in enumerate(text):
        if c.isspace() or c in _SEPARATORS:
            if not in_separator:
                chars.append(" ")
                origin.append(i)
            in_separator = True
            continue
        in_separator = False
        for lower in c.lower():
            chars.append(lower)
            origin.append(i)
    return "".join(chars), origin


def canonicalize(text: str, index: NameIndex) -> str:
    """
    Replace every recognised alias with its canonical name, case-insensitively.

    Single left-to-right trie walk over a folded view of the text, taking
    the longest key at each position, so a short alias inside a longer
    matched name is never rewritten on its own, and text that already uses
    canonical names is returned unchanged. Separators inside a multi-word
    name match any run of whitespace or normalised punctuation.
    """
    if not text or not len(index):
        return text

    folded, origin = _fold(text)
    out: List[str] = []
    copied = 0
    pos = 0
    while pos < len(folded):
        start = origin[pos]
        if (pos > 0 and origin[pos - 1] == start) or (start > 0 and _is_word_char(text[start - 1])):
            pos += 1
            continue
        best = None
        for end, entry in index.iter_matches(folded, pos):
            raw_end = origin[end - 1] + 1
            if raw_end >= len(text) or not _is_word_char(text[raw_end]):
                best = (end, raw_end, entry[1])
        if best is None:
            pos += 1
            continue
        end, raw_end, canonical = best
        out.append(text[copied:start])
        out.append(canonical)
        copied = raw_end
        pos = end
    out.append(text[copied:])
    return "".join(out)


def nudge(
    raw_text: str,
    rule_ids: Set[str],
    name_lookup: Union[NameIndex, Sequence[NameLookupRow]],
    flag_unknown_words: bool = False,
) -> NudgeResult:
    """
    Validate an answer against the pack vocabulary and canonicalize names.

    Args:
        raw_text: Generated answer text
        rule_ids: Valid rule identifiers
        name_lookup: Name lookup rows (or a prebuilt NameIndex)
        flag_unknown_words: Also report unmatched single words as unknown cards

    Returns:
        NudgeResult with the rewritten text and a ValidationSummary
    """
    raw_text = raw_text or ""
    index = name_lookup if isinstance(name_lookup, NameIndex) else NameIndex(name_lookup)

    normalized = normalize(raw_text)

    rules = [
        RuleMention(raw=r, status="valid" if r in rule_ids else "invalid")
        for r in extract_rule_mentions(raw_text)
    ]

    matches = find_card_mentions(normalized, index)
    cards = [
        CardMention(raw=key, canonical=canonical, doc_id=doc_id, status="in_pack")
        for key, canonical, doc_id, _, _ in matches
    ]

    unknown: List[str] = []
    if flag_unknown_words:
        unknown = find_unknown_words(normalized, index, [(s, e) for _, _, _, s, e in matches])
        cards.extend(CardMention(raw=w, status="unknown") for w in unknown)

    valid_rules = sum(1 for r in rules if r.status == "valid")
    recognized = len(matches)
    summary = ValidationSummary(
        cards=cards,
        rules=rules,
        stats=ValidationStats(
            card_hit_rate=recognized / len(cards) if cards else 1.0,
            rule_hit_rate=valid_rules / len(rules) if rules else 1.0,
            unknown_card_count=len(unknown),
            invalid_rule_count=len(rules) - valid_rules,
        ),
    )

    return NudgeResult(nudged_text=canonicalize(raw_text, index), summary=summary)


async def load_rule_ids(reader: PackFileReader, path: str) -> Set[str]:
    """Load rule_ids.json: {"rule_ids": [...], "count"?: n}."""
    data = parse_json(await reader.read_file(path), path)
    rule_ids = data.get("rule_ids") if isinstance(data, dict) else None
    if not isinstance(rule_ids, list):
        logger.warning(f"{path} has no rule_ids list; no rule will validate")
        return set()
    out = {r for r in rule_ids if isinstance(r, str)}
    count = data.get("count")
    if isinstance(count, int) and count != len(rule_ids):
        logger.warning(f"{path}: count={count} but {len(rule_ids)} rule_ids listed")
    return out


async def load_name_lookup(reader: PackFileReader, path: str) -> List[NameLookupRow]:
    """Load name_lookup.jsonl, skipping malformed lines."""
    raw = await reader.read_file(path)
    rows: List[NameLookupRow] = []
    skipped = 0
    for line_no, line in enumerate(raw.split("\n"), 1):
        if not line.strip():
            continue
        try:
            rows.append(NameLookupRow.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as e:
            skipped += 1
            logger.debug(f"{path}:{line_no} skipped: {e}")
    if skipped:
        logger.warning(f"Skipped {skipped} malformed lines in {path}")
    return rows


async def nudge_response(
    raw_text: str,
    pack_state: PackState,
    reader: PackFileReader,
    flag_unknown_words: bool = False,
) -> NudgeResult:
    """Load the validate sidecars and run nudge() on raw answer text."""
    rule_ids, rows = await asyncio.gather(
        load_rule_ids(reader, pack_state.rule_ids_path),
        load_name_lookup(reader, pack_state.name_lookup_path),
    )
    logger.debug(f"Validate sidecars loaded: {len(rule_ids)} rule ids, {len(rows)} names")
    return nudge(raw_text, rule_ids, rows, flag_unknown_words)
