from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple, Union

from src.genstream.domain.models import GenerationRequest, Stage
from src.genstream.services.backend import BackendReply


INTENT_REPLY = json.dumps({
    "category": "saas",
    "confidence": 0.9,
    "reasoning": "Subscription dashboard",
    "suggested_template": "saas",
    "features": ["auth", "billing"],
    "integrations": {"auth": "clerk", "payments": "stripe"},
    "complexity": "moderate",
    "key_entities": ["User", "Plan"],
})

ARCHITECTURE_REPLY = "```json\n" + json.dumps({
    "template": "saas",
    "pages": [{"path": "/", "name": "Home", "components": ["Hero"]}],
    "components": [{"name": "Hero", "type": "section"}],
    "routes": [{"path": "/", "type": "page"}],
    "integrations": {"auth": "clerk"},
}) + "\n```"

CODE_REPLY = json.dumps({
    "files": [{"path": "app/page.tsx", "content": "export default function Page() {\n  return null\n}\n"}],
    "integration_code": [
        {"integration": "auth", "files": [{"path": "middleware.ts", "content": "export {}"}]},
    ],
})

CONTEXT_REPLY = "---CURSORRULES---\n# Rules\nUse TypeScript.\n---STARTPROMPT---\n# Start\nRun npm install."

DEFAULT_REPLIES: Dict[Stage, str] = {
    Stage.INTENT: INTENT_REPLY,
    Stage.ARCHITECTURE: ARCHITECTURE_REPLY,
    Stage.CODE: CODE_REPLY,
    Stage.CONTEXT: CONTEXT_REPLY,
}

# Every scripted stage reports 100 input + 200 output tokens.
TOKENS_PER_STAGE = 300


class ScriptedBackend:
    """Backend double that answers each stage from a script.

    A script entry may be a reply string or an exception instance to raise.
    """

    def __init__(self, overrides: Optional[Dict[Stage, Union[str, Exception]]] = None, chunks: int = 0) -> None:
        self.script: Dict[Stage, Union[str, Exception]] = dict(DEFAULT_REPLIES)
        self.script.update(overrides or {})
        self.chunks = chunks
        self.calls: List[Tuple[Stage, str]] = []

    def complete(self, stage, messages, *, tier="balanced", on_chunk=None) -> BackendReply:
        self.calls.append((stage, tier))
        entry = self.script[stage]
        if isinstance(entry, Exception):
            raise entry
        if on_chunk is not None:
            for i in range(self.chunks):
                on_chunk(f"tok{i}")
        return BackendReply(text=entry, input_tokens=100, output_tokens=200, model="gpt-4o-mini")

    @property
    def stages_called(self) -> List[Stage]:
        return [s for s, _ in self.calls]


def make_request(**overrides: Any) -> GenerationRequest:
    data: Dict[str, Any] = {"description": "A subscription dashboard for gyms", "project_name": "GymDash"}
    data.update(overrides)
    return GenerationRequest(**data)
