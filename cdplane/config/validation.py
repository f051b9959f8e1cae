"""
Module to validate values in a loaded config against a parallel validation
config. Each leaf of the validation config that holds a "type" key describes
one parameter.
"""

# Standard
from typing import Any, Dict, List, Optional, Union
import abc
import builtins

# First Party
import aconfig
import alog

# Local
from .. import constants

log = alog.use_channel("CONFG")


## Public ######################################################################


def get_invalid_params(
    config: aconfig.Config,
    validation_config: aconfig.Config,
) -> List[str]:
    """Get a list of the dotted keys of all params that fail validation

    Args:
        config:  aconfig.Config
            The parsed config with any override values
        validation_config:  aconfig.Config
            The parallel config holding validation setup

    Returns:
        invalid_params:  List[str]
            A list of all string keys for parameters that fail validation
    """
    invalid_params = []
    for val_key, validator in _parse_validation_config(validation_config).items():
        if not validator.validate(_get_dotted(config, val_key)):
            log.warning("Found invalid config key [%s]", val_key)
            invalid_params.append(val_key)
    return invalid_params


## Parameters ##################################################################

# pylint: disable=too-few-public-methods


class _ValidatedParameter(abc.ABC):
    """A parameter with type and value validation"""

    TYPES: List[type] = []
    TYPE_KEY: Optional[str] = None

    def __init__(self, optional: bool = False):
        self.optional = optional

    def validate(self, value: Any) -> bool:
        """Check the type, then the value"""
        if self.optional and value is None:
            return True
        if not any(isinstance(value, typ) for typ in self.TYPES):
            log.warning("Invalid type <%s>", type(value))
            return False
        valid_value = self._validate_value(value)
        if not valid_value:
            log.warning("Invalid value [%s]", value)
        return valid_value

    @abc.abstractmethod
    def _validate_value(self, value: Any) -> bool:
        """Type specific value validation"""


class _NumberParameter(_ValidatedParameter):
    """Numeric parameter with optional inclusive bounds"""

    TYPES = [int, float]
    TYPE_KEY = "number"

    def __init__(
        self,
        *,
        min: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        max: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min = min
        self._max = max

    def _validate_value(self, value: Union[int, float]) -> bool:
        # bool is an int subclass but is never a valid number here
        if isinstance(value, bool):
            return False
        return (self._min is None or value >= self._min) and (
            self._max is None or value <= self._max
        )


class _IntParameter(_NumberParameter):
    TYPES = [int]
    TYPE_KEY = "int"


class _StrParameter(_ValidatedParameter):
    """String parameter with optional length bounds"""

    TYPES = [str]
    TYPE_KEY = "str"

    def __init__(
        self,
        *,
        min_len: Optional[int] = None,
        max_len: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min_len = min_len
        self._max_len = max_len

    def _validate_value(self, value: str) -> bool:
        return (self._min_len is None or len(value) >= self._min_len) and (
            self._max_len is None or len(value) <= self._max_len
        )


class _BoolParameter(_ValidatedParameter):
    TYPES = [bool]
    TYPE_KEY = "bool"

    def _validate_value(self, value: bool) -> bool:
        return True


class _EnumParameter(_ValidatedParameter):
    """Parameter restricted to a fixed set of values"""

    TYPES = [str, int, type(None)]
    TYPE_KEY = "enum"

    def __init__(self, *, values: List[Union[str, int, None]], **kwargs):
        super().__init__(**kwargs)
        assert isinstance(values, list) and values, "Must specify enum values!"
        self.values = values

    def _validate_value(self, value: Union[str, int, None]) -> bool:
        return value in self.values


class _ListParameter(_ValidatedParameter):
    """List parameter with an optional item type"""

    TYPES = [list]
    TYPE_KEY = "list"

    def __init__(self, *, item_type: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self._item_type = None
        if item_type is not None:
            assert hasattr(builtins, item_type), f"Unsupported item_type: {item_type}"
            self._item_type = getattr(builtins, item_type)

    def _validate_value(self, value: list) -> bool:
        return self._item_type is None or all(
            isinstance(item, self._item_type) for item in value
        )


# pylint: enable=too-few-public-methods

_PARAMETER_TYPES = {
    param_class.TYPE_KEY: param_class
    for param_class in [
        _NumberParameter,
        _IntParameter,
        _StrParameter,
        _BoolParameter,
        _EnumParameter,
        _ListParameter,
    ]
}


## Implementation ##############################################################


def _get_dotted(dct: dict, key: str) -> Any:
    for part in key.split(constants.NESTED_DICT_DELIM):
        if not isinstance(dct, dict):
            return None
        dct = dct.get(part)
    return dct


def _parse_validation_config(
    validation_config: dict,
    prefix_parts: Optional[List[str]] = None,
) -> Dict[str, _ValidatedParameter]:
    """Recursively parse the validation config into a flat map from dotted key
    to parameter validator
    """
    output_dict = {}
    prefix_parts = prefix_parts or []
    for key, val in validation_config.items():
        if not isinstance(val, dict):
            continue
        key_parts = prefix_parts + [key]
        nested_key = constants.NESTED_DICT_DELIM.join(key_parts)
        param_type = val.get("type")
        if isinstance(param_type, str) and param_type in _PARAMETER_TYPES:
            param_args = {k: v for k, v in val.items() if k != "type"}
            log.debug3("Found parameter at %s", nested_key)
            output_dict[nested_key] = _PARAMETER_TYPES[param_type](**param_args)
        else:
            log.debug3("Recursing into %s", nested_key)
            output_dict.update(_parse_validation_config(val, key_parts))
    return output_dict
