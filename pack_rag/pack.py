"""
Pack loader: manifest, validate capability, index_meta and rag_config.

Hard-fails on unsupported schema versions, a missing validate capability or
an embed model mismatch. Produces the immutable PackState used by a cycle.
"""
import json
import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .config import Settings, apply_pack_rag_config
from .errors import (
    CountsMismatch,
    EmbedModelMismatch,
    IndexMetaError,
    PackFileNotFound,
    PackLoadError,
    PackSchemaError,
    RetrievalFormatError,
    ValidateCapabilityError,
)
from .pack_reader import PackFileReader
from .schemas import CorpusPaths, IndexMeta, PackState

logger = logging.getLogger(__name__)

PACK_SCHEMA_VERSION = 1
VALIDATE_CAPABILITY_SCHEMA_VERSION = 1
RETRIEVAL_FORMAT_VERSION = 1

MANIFEST_PATH = "manifest.json"
RAG_CONFIG_PATH = "rag_config.json"

_VECTOR_SUFFIX = {"float32": "f32", "float16": "f16"}


def parse_json(raw: str, path: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise PackLoadError(f"Invalid JSON: {path}", {"path": path, "cause": str(e)}) from e


async def read_json(reader: PackFileReader, path: str) -> Any:
    try:
        raw = await reader.read_file(path)
    except FileNotFoundError as e:
        raise PackFileNotFound(f"Missing pack file: {path}", {"path": path}) from e
    return parse_json(raw, path)


async def load_manifest(reader: PackFileReader) -> Dict[str, Any]:
    """
    Load manifest.json and check versions and the validate capability.

    Args:
        reader: Pack reader

    Returns:
        Parsed manifest dict
    """
    manifest = await read_json(reader, MANIFEST_PATH)
    if not isinstance(manifest, dict):
        raise PackLoadError("manifest.json must be a JSON object")

    version = manifest.get("pack_schema_version")
    if version != PACK_SCHEMA_VERSION:
        raise PackSchemaError(
            f"Unsupported pack_schema_version: {version}",
            {"expected": PACK_SCHEMA_VERSION, "actual": version},
        )

    rfv = manifest.get("retrieval_format_version", RETRIEVAL_FORMAT_VERSION)
    if rfv != RETRIEVAL_FORMAT_VERSION:
        raise RetrievalFormatError(
            f"Unsupported retrieval_format_version: {rfv}",
            {"expected": RETRIEVAL_FORMAT_VERSION, "actual": rfv},
        )

    validate = ((manifest.get("sidecars") or {}).get("capabilities") or {}).get("validate")
    if not isinstance(validate, dict):
        raise ValidateCapabilityError("Validate capability is required; missing from manifest.")

    if validate.get("schema_version") != VALIDATE_CAPABILITY_SCHEMA_VERSION:
        raise ValidateCapabilityError(
            f"Unsupported validate capability schema_version: {validate.get('schema_version')}",
            {"expected": VALIDATE_CAPABILITY_SCHEMA_VERSION},
        )

    files = validate.get("files") or {}
    if not (files.get("rules_rule_ids") or {}).get("path") or not (files.get("cards_name_lookup") or {}).get("path"):
        raise ValidateCapabilityError(
            "Validate capability must have files.rules_rule_ids.path and files.cards_name_lookup.path"
        )

    return manifest


async def load_index_meta(reader: PackFileReader, kind: str) -> IndexMeta:
    """Load and validate <kind>/index_meta.json."""
    path = f"{kind}/index_meta.json"
    raw = await read_json(reader, path)
    try:
        return IndexMeta.model_validate(raw)
    except ValidationError as e:
        raise IndexMetaError(f"Invalid {path}: {e.errors()[0].get('msg', 'invalid')}", {"path": path}) from e


async def load_rag_config(reader: PackFileReader) -> Optional[Dict[str, Any]]:
    """Read the optional rag_config.json; missing or invalid files yield None."""
    try:
        raw = await reader.read_file(RAG_CONFIG_PATH)
    except (FileNotFoundError, PackFileNotFound):
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring invalid {RAG_CONFIG_PATH}: {e}")
        return None
    return data if isinstance(data, dict) else None


def _corpus_paths(kind: str, meta: IndexMeta, manifest: Dict[str, Any]) -> CorpusPaths:
    indices = manifest.get("indices") or {}
    n_rows = (indices.get(kind) or {}).get("chunk_count")
    if n_rows is None:
        n_rows = meta.doc_count
    if not isinstance(n_rows, int) or n_rows < 0:
        raise PackLoadError(
            f"No row count for {kind}: set indices.{kind}.chunk_count or doc_count",
            {"kind": kind},
        )
    if meta.max_rows is not None and n_rows > meta.max_rows:
        raise IndexMetaError(
            f"Index exceeds max_rows: {n_rows} > {meta.max_rows}",
            {"kind": kind, "n_rows": n_rows, "max_rows": meta.max_rows},
        )
    return CorpusPaths(
        kind=kind,
        index_meta=meta,
        n_rows=n_rows,
        vectors_path=f"{kind}/vectors.{_VECTOR_SUFFIX[meta.dtype]}",
        chunks_path=f"{kind}/chunks.jsonl",
    )


async def load_pack(reader: PackFileReader, settings: Settings) -> Tuple[PackState, Settings]:
    """
    Full pack load: manifest, validate paths, index_meta for rules and cards.

    Args:
        reader: Pack reader
        settings: Base settings

    Returns:
        (PackState, settings with the pack's rag_config.json applied)
    """
    manifest = await load_manifest(reader)
    validate = manifest["sidecars"]["capabilities"]["validate"]

    rules_meta = await load_index_meta(reader, "rules")
    cards_meta = await load_index_meta(reader, "cards")

    if settings.ENFORCE_EMBED_MODEL_ID:
        for kind, meta in (("rules", rules_meta), ("cards", cards_meta)):
            if meta.embed_model_id != settings.EMBED_MODEL_ID:
                raise EmbedModelMismatch(
                    f"Pack ({kind}) embed_model_id does not match app config",
                    {"pack": meta.embed_model_id, "app": settings.EMBED_MODEL_ID},
                )

    counts_rules = (validate.get("counts") or {}).get("rules")
    chunk_count_rules = ((manifest.get("indices") or {}).get("rules") or {}).get("chunk_count")
    if counts_rules is not None and chunk_count_rules is not None and counts_rules != chunk_count_rules:
        raise CountsMismatch(
            "Validate counts.rules does not match manifest.indices.rules.chunk_count",
            {"counts_rules": counts_rules, "indices_rules_chunk_count": chunk_count_rules},
        )

    rag_config = await load_rag_config(reader)
    if rag_config:
        settings = apply_pack_rag_config(settings, rag_config)

    state = PackState(
        manifest=manifest,
        rules=_corpus_paths("rules", rules_meta, manifest),
        cards=_corpus_paths("cards", cards_meta, manifest),
        rule_ids_path=validate["files"]["rules_rule_ids"]["path"],
        name_lookup_path=validate["files"]["cards_name_lookup"]["path"],
        rag_config=rag_config,
    )
    logger.info(
        f"Loaded pack: rules={state.rules.n_rows} rows, cards={state.cards.n_rows} rows, "
        f"dim={rules_meta.dim}, embed_model_id={rules_meta.embed_model_id}"
    )
    return state, settings
