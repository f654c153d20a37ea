"""
Shared fixtures: an in-memory content pack, a fake model backend and settings.
"""
import json
from typing import Dict, List, Union

import numpy as np
import pytest

from pack_rag.config import Settings
from pack_rag.embedders import ModelBackend
from pack_rag.pack_reader import PackFileReader

ANSWER = "Blood Moon turns nonbasic lands into Mountains. See rule 305.7."


class MemoryPackReader(PackFileReader):
    """Pack reader over a dict of path -> str | bytes."""

    def __init__(self, files: Dict[str, Union[str, bytes]]):
        self.files = files
        self.reads: List[str] = []

    def _get(self, path: str):
        self.reads.append(path)
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def read_file(self, path: str) -> str:
        data = self._get(path)
        return data.decode("utf-8") if isinstance(data, bytes) else data

    async def read_binary(self, path: str) -> bytes:
        data = self._get(path)
        return data.encode("utf-8") if isinstance(data, str) else data


class FakeBackend(ModelBackend):
    """Backend returning a fixed vector and a fixed answer."""

    embed_model_id = "fake-embed"

    def __init__(self, vector, answer: str = ANSWER, cache=None):
        super().__init__(cache)
        self.vector = list(vector)
        self.answer = answer
        self.prompts: List[str] = []
        self.params = None
        self.closed = False

    def _embed(self, text: str) -> List[float]:
        return list(self.vector)

    def complete(self, prompt: str, params) -> str:
        self.prompts.append(prompt)
        self.params = params
        return self.answer

    def close(self):
        self.closed = True
        super().close()


def f32(rows) -> bytes:
    return np.asarray(rows, dtype="<f4").tobytes()


def jsonl(rows) -> str:
    return "\n".join(json.dumps(r) for r in rows) + "\n"


def build_pack_files() -> Dict[str, Union[str, bytes]]:
    manifest = {
        "pack_schema_version": 1,
        "retrieval_format_version": 1,
        "indices": {
            "rules": {"chunk_count": 3},
            "cards": {"chunk_count": 2},
        },
        "sidecars": {
            "capabilities": {
                "validate": {
                    "schema_version": 1,
                    "files": {
                        "rules_rule_ids": {"path": "validate/rule_ids.json"},
                        "cards_name_lookup": {"path": "validate/name_lookup.jsonl"},
                    },
                    "counts": {"rules": 3},
                }
            }
        },
    }
    meta = {"embed_model_id": "nomic-embed-text", "dim": 3, "metric": "l2", "normalize": False}
    return {
        "manifest.json": json.dumps(manifest),
        "rules/index_meta.json": json.dumps(meta),
        "cards/index_meta.json": json.dumps(meta),
        "rules/vectors.f32": f32([[1, 0, 0], [0, 1, 0], [0, 0, 1]]),
        "cards/vectors.f32": f32([[0.9, 0.1, 0], [0, 0, 1]]),
        "rules/chunks.jsonl": jsonl([
            {"doc_id": "rule-305.7", "title": "305.7", "text": "An effect that sets a land's subtype replaces its old land types."},
            {"doc_id": "rule-613.1", "title": "613.1", "text": "Continuous effects are applied in a series of layers."},
            {"doc_id": "rule-100.1", "title": "100.1", "text": "These rules apply to any game."},
        ]),
        "cards/chunks.jsonl": jsonl([
            {"doc_id": "blood-moon", "title": "Blood Moon", "text": "Nonbasic lands are Mountains."},
            {"doc_id": "ornithopter", "title": "Ornithopter", "text": "Flying"},
        ]),
        "validate/rule_ids.json": json.dumps({"rule_ids": ["305.7", "613.1", "100.1"], "count": 3}),
        "validate/name_lookup.jsonl": jsonl([
            {"doc_id": "blood-moon", "name": "Blood Moon", "norm": "blood moon", "aliases_norm": ["blood moon"]},
            {"doc_id": "ornithopter", "name": "Ornithopter", "norm": "ornithopter", "aliases_norm": ["thopter"]},
        ]),
    }


@pytest.fixture
def pack_files():
    return build_pack_files()


@pytest.fixture
def reader(pack_files):
    return MemoryPackReader(pack_files)


@pytest.fixture
def settings():
    return Settings(_env_file=None, BUST_CACHE=True)


@pytest.fixture
def backend():
    return FakeBackend([1.0, 0.0, 0.0])


@pytest.fixture
def pack_dir(tmp_path, pack_files):
    """The same pack written to disk."""
    root = tmp_path / "pack"
    for rel, data in pack_files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, bytes):
            path.write_bytes(data)
        else:
            path.write_text(data, encoding="utf-8")
    return root
