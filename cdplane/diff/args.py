"""
Merging of container command-line arguments
"""

# Standard
from typing import Dict, List, Optional, Set, Tuple

# First Party
import alog

log = alog.use_channel("ARGS")


def merge_args(base: List[str], extra: Optional[List[str]]) -> List[str]:
    """Merge user supplied arguments into a base command line.

    Flags present in the base command are not repeatable: an extra occurrence
    replaces the base flag along with its value and moves it to the end. Flags
    not present in the base command may repeat as long as each occurrence
    carries a distinct value. A flag and value pair that is already present is
    skipped. A flag's value is the following token unless that token is itself
    a flag.

    Args:
        base:  List[str]
            The operator generated command line
        extra:  Optional[List[str]]
            User supplied arguments

    Returns:
        merged:  List[str]
            The merged command line
    """
    result: List[Tuple[str, Optional[str]]] = []
    seen: Dict[str, Set[Optional[str]]] = {}
    non_repeatable: Set[str] = set()

    for flag, value in _tokenize(base):
        if flag is None:
            result.append((value, None))
            continue
        seen.setdefault(flag, set()).add(value)
        non_repeatable.add(flag)
        result.append((flag, value))

    for flag, value in _tokenize(extra or []):
        if flag is None:
            result.append((value, None))
            continue
        if value in seen.get(flag, set()):
            log.debug3("Skipping duplicate arg %s %s", flag, value)
            continue
        if flag in non_repeatable:
            log.debug2("Replacing base arg %s with value %s", flag, value)
            result = [entry for entry in result if entry[0] != flag]
            seen[flag] = {value}
        else:
            seen.setdefault(flag, set()).add(value)
        result.append((flag, value))

    merged = []
    for token, value in result:
        merged.append(token)
        if value is not None:
            merged.append(value)
    return merged


def _tokenize(args: List[str]) -> List[Tuple[Optional[str], Optional[str]]]:
    """Group args into (flag, value) pairs. Positional tokens that do not follow
    a flag come back as (None, token).
    """
    tokens = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg.startswith("--"):
            value = None
            if i + 1 < len(args) and not args[i + 1].startswith("--"):
                value = args[i + 1]
                i += 1
            tokens.append((arg, value))
        else:
            tokens.append((None, arg))
        i += 1
    return tokens
