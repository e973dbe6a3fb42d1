"""Error taxonomy for the configuration engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional


@dataclass(frozen=True)
class RuleIssue:
    """One structural problem found in a rule, addressed to the rule author."""
    message: str
    rule_id: Optional[str] = None
    field: Optional[str] = None

    def __str__(self) -> str:
        where = ""
        if self.rule_id:
            where = f"rule {self.rule_id}"
            if self.field:
                where += f".{self.field}"
            where += ": "
        elif self.field:
            where = f"{self.field}: "
        return f"{where}{self.message}"


class ConfigurationError(ValueError):
    """
    A rule is structurally invalid (unparseable formula, dangling material
    reference, duplicate rule).  Raised at rule-load / validation time.
    """

    def __init__(self, issues: Iterable[RuleIssue] | str):
        if isinstance(issues, str):
            issues = [RuleIssue(message=issues)]
        self.issues: List[RuleIssue] = list(issues)
        summary = "; ".join(str(i) for i in self.issues[:5])
        if len(self.issues) > 5:
            summary += f"; ... ({len(self.issues) - 5} more)"
        super().__init__(summary or "Invalid configuration")


class DataUnavailable(RuntimeError):
    """The rule store or cache store could not be read or written."""
