"""
Tests for merging user supplied container arguments
"""

# Local
from cdplane.diff import merge_args


def test_no_extra_args():
    base = ["--redis", "cache:6379", "--insecure"]
    assert merge_args(base, None) == base
    assert merge_args(base, []) == base


def test_new_flags_appended():
    assert merge_args(["--redis", "cache:6379"], ["--loglevel", "debug"]) == [
        "--redis",
        "cache:6379",
        "--loglevel",
        "debug",
    ]


def test_base_flag_replaced_and_moved_to_end():
    """Make sure an extra occurrence of a base flag replaces the base flag and
    its value rather than repeating it
    """
    merged = merge_args(
        ["--redis", "cache:6379", "--repo-server", "repo:8081"],
        ["--redis", "other:6379"],
    )
    assert merged == ["--repo-server", "repo:8081", "--redis", "other:6379"]


def test_repeatable_flags_with_distinct_values():
    """Make sure flags not in the base may repeat with distinct values and an
    exact duplicate is skipped
    """
    merged = merge_args(
        ["--redis", "cache:6379"],
        ["--label", "a", "--label", "b", "--label", "a"],
    )
    assert merged == ["--redis", "cache:6379", "--label", "a", "--label", "b"]


def test_identical_base_pair_skipped():
    base = ["--operation-processors", "10"]
    assert merge_args(base, ["--operation-processors", "10"]) == base


def test_boolean_flags():
    """Make sure flags without values are handled"""
    assert merge_args(["--insecure", "--redis", "c"], ["--insecure", "--debug"]) == [
        "--insecure",
        "--redis",
        "c",
        "--debug",
    ]


def test_positional_tokens_kept():
    assert merge_args(["run"], ["extra"]) == ["run", "extra"]
