"""Task classification: which domain a task belongs to and which phrasing it follows."""

import re
from dataclasses import dataclass
from typing import Protocol

GENERAL_DOMAIN = "general"

# Checked in order; the first domain with a matching keyword wins.
DOMAIN_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("api", ("api", "endpoint", "webhook", "graphql", "rest")),
    ("database", ("database", "schema", "prisma", "postgres", "redis", "migration")),
    ("frontend", ("ui", "react", "component", "dashboard", "page", "view")),
    ("backend", ("server", "service", "module", "controller")),
    ("ai", ("agent", "claude", "llm", "ai", "prompt", "model")),
    ("auth", ("auth", "login", "oauth", "permission", "token", "session")),
    ("testing", ("test", "spec", "mock", "coverage", "e2e")),
    ("devops", ("deploy", "ci", "cd", "docker", "pipeline")),
)


@dataclass(frozen=True)
class PatternTemplate:
    regex: re.Pattern
    pattern: str
    domain: str


def _template(expr: str, pattern: str, domain: str) -> PatternTemplate:
    return PatternTemplate(re.compile(expr, re.IGNORECASE), pattern, domain)


PATTERN_TEMPLATES: tuple[PatternTemplate, ...] = (
    _template(r"implement\s+(\w+)\s+endpoint", "implement-endpoint", "api"),
    _template(r"create\s+(\w+)\s+component", "create-component", "frontend"),
    _template(r"add\s+(\w+)\s+service", "add-service", "backend"),
    _template(r"fix\s+bug\s+in\s+(\w+)", "fix-bug", "debugging"),
    _template(r"write\s+tests?\s+for\s+(\w+)", "write-tests", "testing"),
    _template(r"update\s+(\w+)\s+schema", "update-schema", "database"),
    _template(r"integrate\s+(\w+)", "integration", "integration"),
    _template(r"refactor\s+(\w+)", "refactor", "maintenance"),
    _template(r"deploy\s+to\s+(\w+)", "deployment", "devops"),
)


@dataclass(frozen=True)
class PatternMatch:
    pattern: str
    domain: str


class Classifier(Protocol):
    def detect_domain(self, task: str) -> str: ...

    def extract_pattern(self, task: str) -> PatternMatch | None: ...


class KeywordClassifier:
    """Substring keyword domains and ordered regex phrasing templates."""

    def __init__(
        self,
        domains: tuple[tuple[str, tuple[str, ...]], ...] = DOMAIN_KEYWORDS,
        templates: tuple[PatternTemplate, ...] = PATTERN_TEMPLATES,
    ):
        self.domains = domains
        self.templates = templates

    def detect_domain(self, task: str) -> str:
        lowered = task.lower()
        for domain, keywords in self.domains:
            if any(kw in lowered for kw in keywords):
                return domain
        return GENERAL_DOMAIN

    def extract_pattern(self, task: str) -> PatternMatch | None:
        for template in self.templates:
            if template.regex.search(task):
                return PatternMatch(template.pattern, template.domain)

        domain = self.detect_domain(task)
        if domain != GENERAL_DOMAIN:
            return PatternMatch(f"{domain}-task", domain)
        return None
