"""Reading structure back out of free-text agent output.

Agent output is plain model text, so everything here is a heuristic. The
heuristics are kept in one place so their false positives can be tested.
"""

import json
import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

FAILURE_MARKERS = ("failed", "error")
MAX_LEARNINGS_PER_TASK = 3
MIN_LEARNING_LENGTH = 10


@dataclass
class AgentRequest:
    name: str
    description: str
    role: str = "specialist"
    capabilities: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)


@dataclass
class SkillRequest:
    name: str
    description: str
    prompt: str


def classify_success(output: str) -> bool:
    """False iff the output mentions failure anywhere, case-insensitively.

    "no error found" counts as a failure; this is a known false positive.
    """
    lowered = output.lower()
    return not any(marker in lowered for marker in FAILURE_MARKERS)


def extract_section(output: str, heading: str) -> str | None:
    """Body of a '## <heading>' section, up to the next '##' heading."""
    match = re.search(
        rf"^##\s*{re.escape(heading)}[ \t]*\n(.*?)(?=\n##|\Z)",
        output,
        re.IGNORECASE | re.DOTALL | re.MULTILINE,
    )
    if not match:
        return None
    return match.group(1)


def extract_learnings(output: str, limit: int = MAX_LEARNINGS_PER_TASK) -> list[str]:
    section = extract_section(output, "Learnings")
    if section is None:
        return []
    learnings = []
    for line in section.splitlines():
        cleaned = re.sub(r"^\s*(?:[-*]|\d+[.)])\s*", "", line).strip()
        if len(cleaned) > MIN_LEARNING_LENGTH:
            learnings.append(cleaned)
    return learnings[:limit]


def _field(block: str, name: str) -> str | None:
    match = re.search(rf"^\s*{name}:\s*(.+)$", block, re.IGNORECASE | re.MULTILINE)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_agent_request(output: str) -> AgentRequest | None:
    block = extract_section(output, "New Agent Request")
    if block is None:
        return None
    name = _field(block, "name")
    description = _field(block, "description")
    if not name or not description:
        logger.warning("Ignoring agent request without name/description")
        return None
    role = (_field(block, "role") or "specialist").lower()
    if role not in ("manager", "specialist", "support"):
        logger.warning("Agent request for %s has unknown role %r, using specialist", name, role)
        role = "specialist"
    return AgentRequest(
        name=name,
        description=description,
        role=role,
        capabilities=_split_list(_field(block, "capabilities")),
        tools=_split_list(_field(block, "tools")),
    )


def parse_skill_request(output: str) -> SkillRequest | None:
    block = extract_section(output, "New Skill Request")
    if block is None:
        return None
    name = _field(block, "name")
    description = _field(block, "description")
    prompt_match = re.search(
        r"^\s*prompt:\s*(.+?)(?=\n\s*[a-z]+:|\Z)",
        block,
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    prompt = prompt_match.group(1).strip() if prompt_match else ""
    prompt = prompt.removesuffix("```").strip()
    if not name or not description or not prompt:
        logger.warning("Ignoring skill request without name/description/prompt")
        return None
    return SkillRequest(name=name, description=description, prompt=prompt)


def parse_json_object(text: str) -> dict | None:
    """Parse a JSON object from model output, tolerating fences and chatter."""
    candidates = [text.strip()]
    fenced = re.search(r"```(?:json)?\s*\n(.*?)```", text, re.DOTALL)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None
