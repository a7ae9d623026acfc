from groupcast.filters import resolve_recipients
from groupcast.models import Group, TargetingRule

DIRECTORY = [
    Group("A", "Promo North", 10),
    Group("B", "Family", 50),
    Group("C", "promo south", 5),
    Group("D", "Promo Weekly", 200),
]


def ids(groups):
    return [g.id for g in groups]


def test_explicit_ids_intersect_directory():
    rule = TargetingRule.explicit(["A", "C"])
    assert set(ids(resolve_recipients(rule, DIRECTORY))) == {"A", "C"}


def test_explicit_ids_missing_from_directory_are_dropped():
    rule = TargetingRule.explicit(["A", "ZZ"])
    assert ids(resolve_recipients(rule, DIRECTORY)) == ["A"]


def test_min_size_predicate():
    directory = [Group("X", "x", 50), Group("Y", "y", 150), Group("Z", "z", 200)]
    assert ids(resolve_recipients(TargetingRule(min_size=100), directory)) == ["Z", "Y"]


def test_name_filter_is_case_insensitive():
    rule = TargetingRule(min_size=0, name_contains="PROMO")
    assert ids(resolve_recipients(rule, DIRECTORY)) == ["D", "A", "C"]


def test_recipients_sorted_by_descending_size():
    rule = TargetingRule.explicit(["A", "B", "C", "D"])
    sizes = [g.size for g in resolve_recipients(rule, DIRECTORY)]
    assert sizes == [200, 50, 10, 5]


def test_ties_keep_directory_order():
    directory = [Group("first", size=7), Group("big", size=9), Group("second", size=7)]
    assert ids(resolve_recipients(TargetingRule(), directory)) == ["big", "first", "second"]


def test_empty_result_is_not_an_error():
    assert resolve_recipients(TargetingRule(min_size=1000), DIRECTORY) == []
