from revengine.domain.models import Constituent, ExistingRecord, Interaction, Opportunity, Score, Task
from revengine.domain.rules import ValidationError
from revengine.domain.ruleset import RuleSet, RuleSetError, load_rule_set

__all__ = [
    "Constituent",
    "ExistingRecord",
    "Interaction",
    "Opportunity",
    "RuleSet",
    "RuleSetError",
    "Score",
    "Task",
    "ValidationError",
    "load_rule_set",
]
