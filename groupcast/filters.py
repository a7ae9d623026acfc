from typing import Iterable, List

from .models import Group, TargetingRule


def matches(rule: TargetingRule, group: Group) -> bool:
    if rule.is_explicit:
        return group.id in rule.ids
    if (group.size or 0) < rule.min_size:
        return False
    if rule.name_contains:
        return rule.name_contains.lower() in (group.subject or "").lower()
    return True


def resolve_recipients(rule: TargetingRule, directory: Iterable[Group]) -> List[Group]:
    """
    Groups of `directory` targeted by `rule`, largest first.

    Explicit ids missing from the directory (the bot left the group, say) are
    dropped. Ties keep directory order since sorted() is stable.
    """
    selected = [g for g in directory if matches(rule, g)]
    return sorted(selected, key=lambda g: g.size or 0, reverse=True)
