"""
Common utilities shared across components in the library
"""

# Standard
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import os
import re

# First Party
import alog

# Local
from . import constants

log = alog.use_channel("CDUTL")

# Sentinel for missing dict values
__MISSING__ = "__MISSING__"

## Dicts #######################################################################


def merge_configs(base, overrides) -> dict:
    """Helper to perform a deep merge of the overrides into the base. The merge
    is done in place, but the resulting dict is also returned for convenience.

    If both the base and overrides have a key and the type of the key for both
    is a dict, recursively merge, otherwise set the base value to the override
    value.

    Args:
        base:  dict
            The base config that will be updated with the overrides
        overrides:  dict
            The override config

    Returns:
        merged:  dict
            The merged results of overrides merged onto base
    """
    for key, value in overrides.items():
        if (
            key not in base
            or not isinstance(base[key], dict)
            or not isinstance(value, dict)
        ):
            base[key] = value
        else:
            base[key] = merge_configs(base[key], value)

    return base


def nested_set(dct: dict, key: str, val: Any):
    """Helper to set values in a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict into which the key will be set
        key:  str
            Key that may contain '.' notation indicating dict nesting
        val:  Any
            The value to place at the nested key
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for i, part in enumerate(parts[:-1]):
        dct = dct.setdefault(part, {})
        if not isinstance(dct, dict):
            raise TypeError(
                f"Intermediate key {constants.NESTED_DICT_DELIM.join(parts[:i])} "
                "is not a dict"
            )
    dct[parts[-1]] = val


def nested_get(dct: dict, key: str, dflt=None) -> Any:
    """Helper to get values from a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict from which the value will be read
        key:  str
            Key that may contain '.' notation indicating dict nesting

    Returns:
        val:  Any
            Whatever is found at the given key or dflt if the key is not found.
            This includes missing intermediate dicts.
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for part in parts[:-1]:
        dct = dct.get(part, __MISSING__)
        if dct is __MISSING__ or dct is None:
            return dflt
        if not isinstance(dct, dict):
            raise TypeError(f"Intermediate key {part} is not a dict")
    return dct.get(parts[-1], dflt)


## Names #######################################################################


def get_truncated_name(name: str, max_len: int = constants.MAX_NAME_LEN) -> str:
    """Perform truncation on a name to make it conform to kubernetes limits
    while remaining unique.

    Args:
        name:  str
            The name that should be truncated and made unique
        max_len:  int
            The maximum length of the output

    Returns:
        truncated_name:  str
            A version of name that has been truncated and made unique
    """
    if len(name) > max_len:
        sha = hashlib.sha256()
        sha.update(name.encode("utf-8"))
        trunc_name = name[: max_len - 5].rstrip("-.") + "-" + sha.hexdigest()[:4]
        log.debug2("Truncated name [%s] -> [%s]", name, trunc_name)
        name = trunc_name
    return name


def is_reserved_key(key: str) -> bool:
    """Determine whether a label or annotation key belongs to the platform"""
    return any(prefix in key for prefix in constants.RESERVED_PLATFORM_PREFIXES)


def sha256_checksum(data: Dict[str, Any]) -> str:
    """Stable checksum of a secret or configmap data dict"""
    sha = hashlib.sha256()
    for key in sorted(data or {}):
        sha.update(key.encode("utf-8"))
        sha.update(str(data[key]).encode("utf-8"))
    return sha.hexdigest()


def getenv_case_insensitive(name: str) -> Tuple[Optional[str], Optional[str]]:
    """Look up an environment variable ignoring case

    Returns:
        key:  Optional[str]
            The exact key found in the environment
        value:  Optional[str]
            The value, or None if no variant of the key is set
    """
    upper_name = name.upper()
    for key, value in os.environ.items():
        if key.upper() == upper_name:
            return key, value
    return None, None


## Time ########################################################################

# Shamelessly stolen from
# https://stackoverflow.com/questions/4628122/how-to-construct-a-timedelta-object-from-a-simple-string
_time_delta_regex = re.compile(
    r"^((?P<days>\d+?)d)?((?P<hours>\d+?)(hr|h))?((?P<minutes>\d+?)m)?"
    r"((?P<seconds>\d*\.?\d+?)s)?$"
)


def parse_time_delta(
    time_str: str,
) -> Optional[timedelta]:
    """Parse a string into a timedelta. Excepts values in the
    following formats: 1d, 1h, 1hr, 5m, 10s, 1h30m, etc

    Args:
        time_str: str
            The string representation of a timedelta

    Returns:
        result: Optional[timedelta]
            The parsed timedelta if one could be found
    """
    parts = _time_delta_regex.match(time_str or "")
    if not parts or all(part is None for part in parts.groupdict().values()):
        return None
    time_params = {}
    for name, param in parts.groupdict().items():
        if param:
            time_params[name] = float(param)
    return timedelta(**time_params)


## Label Selectors #############################################################

# Note the spaces are required to correctly distinguish between operators and
# random characters
_EQUALITY_OPS = ["==", "!=", "="]
_SET_OPS = [" notin ", " in "]

_label_key_regex = re.compile(
    r"^([A-Za-z0-9]([-A-Za-z0-9.]*[A-Za-z0-9])?/)?[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$"
)


def parse_label_selector(selector: str) -> List[Tuple[str, str, Any]]:
    """Parse a kubernetes label selector into (key, operator, value) terms. For
    the complete documentation regarding selectors see:
    https://kubernetes.io/docs/concepts/overview/working-with-objects/labels/#syntax-and-character-set

    Args:
        selector:  str
            The selector string (e.g. "app=foo,tier in (a, b),!legacy")

    Returns:
        terms:  List[Tuple[str, str, Any]]
            The operator is one of "=", "!=", "in", "notin", "exists", "!exists"

    Raises:
        ValueError if the selector is malformed
    """
    terms = []
    for term in split_selectors(selector or ""):
        term = term.strip()
        if not term:
            raise ValueError(f"Empty term in selector [{selector}]")

        parsed = None
        for op in _SET_OPS:
            if op in term:
                key, values = term.split(op, 1)
                values = values.strip()
                if not (values.startswith("(") and values.endswith(")")):
                    raise ValueError(f"Set selector [{term}] is missing parentheses")
                parsed = (
                    key.strip(),
                    op.strip(),
                    [val.strip() for val in values[1:-1].split(",") if val.strip()],
                )
                break
        if parsed is None:
            for op in _EQUALITY_OPS:
                if op in term:
                    key, value = term.split(op, 1)
                    parsed = (key.strip(), "!=" if op == "!=" else "=", value.strip())
                    break
        if parsed is None:
            if term.startswith("!"):
                parsed = (term[1:].strip(), "!exists", None)
            else:
                parsed = (term, "exists", None)

        if not _label_key_regex.match(parsed[0]):
            raise ValueError(f"Invalid label key [{parsed[0]}] in selector")
        terms.append(parsed)
    return terms


def match_label_selector(labels: Optional[Dict[str, str]], selector: str) -> bool:
    """Determine if a set of labels matches the given selector

    Raises:
        ValueError if the selector is malformed
    """
    labels = labels or {}
    for key, op, expected in parse_label_selector(selector):
        value = labels.get(key)
        value = str(value).strip() if value is not None else value
        if op == "=":
            matched = value == expected
        elif op == "!=":
            matched = value != expected
        elif op == "in":
            matched = value in expected
        elif op == "notin":
            matched = value not in expected
        elif op == "exists":
            matched = value is not None
        else:
            matched = value is None
        if not matched:
            log.debug3(
                "Label with key: %s and value: %s does not match selector %s",
                key,
                value,
                selector,
            )
            return False
    return True


def split_selectors(selector: str = "") -> List[str]:
    """Split up selectors by , but ignoring those surrounded by () e.g.
    'app,app in (frontend, backend)' becomes ['app','app in (frontend, backend)']
    """
    output_list = []
    current_selector = ""
    in_paren = False
    for char in selector:
        if char == "," and not in_paren:
            output_list.append(current_selector)
            current_selector = ""
            continue
        if char == "(" and not in_paren:
            in_paren = True
        elif char == ")" and in_paren:
            in_paren = False
        current_selector += char
    if current_selector:
        output_list.append(current_selector)
    return output_list


def make_label_selector(labels: Dict[str, str]) -> str:
    """Build an equality selector string from a dict of labels"""
    return ",".join(f"{key}={val}" for key, val in sorted(labels.items()))
