"""The four pipeline stages.

Each stage turns the shared run context into a prompt, calls the backend once
and parses the reply into its expected shape. A reply that cannot be parsed is
a terminal failure for the attempt.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from ..domain.models import (
    GeneratedCode,
    GenerationRequest,
    ProjectArchitecture,
    ProjectContext,
    ProjectIntent,
    Stage,
)
from .backend import BackendReply, BackendTerminalError, ChunkCallback, StageBackend


CURSORRULES_DELIMITER = "---CURSORRULES---"
STARTPROMPT_DELIMITER = "---STARTPROMPT---"

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


class StageOutputError(BackendTerminalError):
    """The backend reply did not match the stage's expected structure."""


def extract_json(text: str) -> Dict[str, Any]:
    cleaned = _FENCE_RE.sub("", (text or "").strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # Fall back to the first JSON object embedded in the text
        m = re.search(r"\{[\s\S]*\}", cleaned)
        if not m:
            raise StageOutputError("reply contained no JSON object")
        try:
            data = json.loads(m.group(0))
        except json.JSONDecodeError as exc:
            raise StageOutputError(f"reply JSON could not be parsed: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise StageOutputError("reply JSON must be an object")
    return data


class PipelineStage:
    stage: Stage = Stage.INTENT
    output_key: str = ""
    system_prompt: str = ""

    def build_messages(self, request: GenerationRequest, context: Dict[str, Any]) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self.user_prompt(request, context)},
        ]

    def user_prompt(self, request: GenerationRequest, context: Dict[str, Any]) -> str:
        raise NotImplementedError

    def parse(self, text: str) -> BaseModel:
        raise NotImplementedError

    def run(
        self,
        backend: StageBackend,
        request: GenerationRequest,
        context: Dict[str, Any],
        on_chunk: Optional[ChunkCallback] = None,
    ) -> tuple[BaseModel, BackendReply]:
        reply = backend.complete(
            self.stage,
            self.build_messages(request, context),
            tier=request.model_tier,
            on_chunk=on_chunk,
        )
        return self.parse(reply.text), reply


def _validate(model: type[BaseModel], data: Dict[str, Any], stage: Stage) -> BaseModel:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise StageOutputError(f"{stage.value} output failed validation: {exc.error_count()} error(s)") from exc


def _describe(request: GenerationRequest) -> str:
    lines = [f"DESCRIPTION:\n{request.description}"]
    for label, value in (
        ("PROJECT NAME", request.project_name),
        ("TEMPLATE", request.template),
        ("VISION", request.vision),
        ("MISSION", request.mission),
    ):
        if value:
            lines.append(f"{label}: {value}")
    if request.constraints:
        lines.append("CONSTRAINTS:\n" + json.dumps(request.constraints, indent=2, sort_keys=True))
    return "\n\n".join(lines)


class IntentStage(PipelineStage):
    stage = Stage.INTENT
    output_key = "intent"
    system_prompt = (
        "You classify web project requests. Return ONLY a JSON object with keys: "
        "category, confidence (0-1), reasoning, suggested_template, features (list), "
        "integrations (object of name -> provider or null), complexity, key_entities (list)."
    )

    def user_prompt(self, request: GenerationRequest, context: Dict[str, Any]) -> str:
        return _describe(request)

    def parse(self, text: str) -> ProjectIntent:
        return _validate(ProjectIntent, extract_json(text), self.stage)  # type: ignore[return-value]


class ArchitectureStage(PipelineStage):
    stage = Stage.ARCHITECTURE
    output_key = "architecture"
    system_prompt = (
        "You design the structure of a web project. Return ONLY a JSON object with keys: "
        "template, pages (path, name, description, components, layout), components "
        "(name, type, description, props, template), routes (path, type, method, description), integrations."
    )

    def user_prompt(self, request: GenerationRequest, context: Dict[str, Any]) -> str:
        intent: ProjectIntent = context["intent"]
        return _describe(request) + "\n\nINTENT:\n" + intent.model_dump_json(indent=2)

    def parse(self, text: str) -> ProjectArchitecture:
        return _validate(ProjectArchitecture, extract_json(text), self.stage)  # type: ignore[return-value]


class CodeStage(PipelineStage):
    stage = Stage.CODE
    output_key = "code"
    system_prompt = (
        "You generate project files for the given architecture. Return ONLY a JSON object with keys: "
        "files (list of path, content, overwrite) and integration_code (list of integration, files)."
    )

    def user_prompt(self, request: GenerationRequest, context: Dict[str, Any]) -> str:
        architecture: ProjectArchitecture = context["architecture"]
        return _describe(request) + "\n\nARCHITECTURE:\n" + architecture.model_dump_json(indent=2)

    def parse(self, text: str) -> GeneratedCode:
        return _validate(GeneratedCode, extract_json(text), self.stage)  # type: ignore[return-value]


class ContextStage(PipelineStage):
    """Writes the editor rules file and the start prompt in one call."""

    stage = Stage.CONTEXT
    output_key = "context"
    system_prompt = (
        "You write onboarding context for an AI code editor. Output exactly two files using this format:\n"
        f"{CURSORRULES_DELIMITER}\n[.cursorrules content]\n{STARTPROMPT_DELIMITER}\n[START_PROMPT.md content]\n"
        f"Do NOT include any other text before {CURSORRULES_DELIMITER}."
    )

    def user_prompt(self, request: GenerationRequest, context: Dict[str, Any]) -> str:
        intent: ProjectIntent = context["intent"]
        architecture: ProjectArchitecture = context["architecture"]
        pages = ", ".join(p.path for p in architecture.pages) or "none"
        integrations = ", ".join(f"{k}: {v}" for k, v in architecture.integrations.items() if v) or "none"
        return (
            f"PROJECT: {request.project_name or 'MyApp'}\n"
            f"DESCRIPTION: {request.description}\n"
            f"TEMPLATE: {architecture.template}\n"
            f"PAGES: {pages}\n"
            f"INTEGRATIONS: {integrations}\n"
            f"FEATURES: {', '.join(intent.features) or 'none'}"
        )

    def parse(self, text: str) -> ProjectContext:
        body = text or ""
        start = body.find(CURSORRULES_DELIMITER)
        split = body.find(STARTPROMPT_DELIMITER)
        if start == -1 or split == -1 or split < start:
            raise StageOutputError("context reply is missing its file delimiters")
        rules = body[start + len(CURSORRULES_DELIMITER):split].strip()
        prompt = body[split + len(STARTPROMPT_DELIMITER):].strip()
        if not rules or not prompt:
            raise StageOutputError("context reply has an empty file section")
        return ProjectContext(cursorrules=rules, start_prompt=prompt)


def default_stages() -> List[PipelineStage]:
    return [IntentStage(), ArchitectureStage(), CodeStage(), ContextStage()]
