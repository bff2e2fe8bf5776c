"""In-memory tracking of recurring task phrasings."""

from datetime import datetime

from agent_team.db.models import PatternRecord

MAX_EXAMPLES = 5


class PatternTracker:
    """Occurrence counts per pattern key. Lives for the process lifetime."""

    def __init__(self, max_examples: int = MAX_EXAMPLES):
        self.max_examples = max_examples
        self._records: dict[str, PatternRecord] = {}

    def track(self, pattern: str, domain: str, example: str) -> PatternRecord:
        now = datetime.now()
        record = self._records.get(pattern)
        if record is None:
            record = PatternRecord(pattern=pattern, domain=domain, first_seen=now)
            self._records[pattern] = record

        record.occurrences += 1
        record.last_seen = now
        record.examples = (record.examples + [example])[-self.max_examples:]
        return record

    def get(self, pattern: str) -> PatternRecord | None:
        return self._records.get(pattern)

    def list(self) -> list[PatternRecord]:
        return list(self._records.values())

    def domain_count(self, domain: str) -> int:
        return sum(r.occurrences for r in self._records.values() if r.domain == domain)
