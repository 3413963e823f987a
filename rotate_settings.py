'''
Settings for the backup rotation: INI loading, validation and the
pre-flight checks that must pass before any tier is touched.
'''
import configparser
import logging
import os
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

CONFIG_SECTION = 'backup'
TIER_NAMES = ('manual', 'daily', 'weekly', 'monthly', 'yearly')
REQUIRED_KEYS = ('name', 'source_directory', 'destination_root')

DEFAULTS = {
    'daily_days': '1,2,3,4,5,6,7',
    'weekly_enabled': 'no',
    'weekly_trigger_day': '7',
    'weekly_retention_weeks': '4',
    'monthly_enabled': 'no',
    'monthly_trigger_day': '1',
    'monthly_retention_months': '12',
    'yearly_enabled': 'no',
    'yearly_trigger_day_of_year': '0',
    'yearly_retention_years': '0',
}

_TRUE = {'1', 'yes', 'true', 'on'}
_FALSE = {'0', 'no', 'false', 'off'}


class RotateError(Exception):
    """Base class for every fatal rotation error."""


class ConfigError(RotateError):
    """Raised when a required setting is missing, empty or malformed."""


class SourceNotFoundError(RotateError):
    """Raised when the source directory is missing or unreadable."""


class DestinationUnwritableError(RotateError):
    """Raised when the destination tree cannot be created or written."""


@dataclass(frozen=True)
class Settings:
    name: str
    source_directory: str
    destination_root: str
    daily_days: frozenset = frozenset(range(1, 8))
    weekly_enabled: bool = False
    weekly_trigger_day: int = 7
    weekly_retention_weeks: int = 4
    monthly_enabled: bool = False
    monthly_trigger_day: int = 1
    monthly_retention_months: int = 12
    yearly_enabled: bool = False
    yearly_trigger_day_of_year: int = 0
    yearly_retention_years: int = 0

    def tier_directory(self, tier):
        return os.path.join(self.destination_root, tier)


def parse_bool(value, key):
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{key} must be a boolean (yes/no, 1/0), got {value!r}.")


def parse_int(value, key, minimum=None, maximum=None):
    try:
        number = int(value.strip())
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}.") from None
    if minimum is not None and number < minimum:
        raise ConfigError(f"{key} must be at least {minimum}, got {number}.")
    if maximum is not None and number > maximum:
        raise ConfigError(f"{key} must be at most {maximum}, got {number}.")
    return number


def parse_days(value, key):
    ''' Parse a comma or space separated list of ISO weekday numbers. '''
    parts = [part for part in re.split(r'[,\s]+', value.strip()) if part]
    if not parts:
        raise ConfigError(f"{key} must name at least one weekday (1-7).")
    return frozenset(parse_int(part, key, 1, 7) for part in parts)


def settings_from_mapping(mapping):
    '''
    Validate a key -> string mapping and build Settings from it.
    Missing optional keys fall back to DEFAULTS.
    '''
    for key in REQUIRED_KEYS:
        if not (mapping.get(key) or '').strip():
            raise ConfigError(f"Required setting '{key}' is missing or empty.")

    unknown = set(mapping) - set(REQUIRED_KEYS) - set(DEFAULTS)
    for key in sorted(unknown):
        logger.warning("Ignoring unknown setting '%s'", key)

    values = dict(DEFAULTS)
    values.update({k: v for k, v in mapping.items() if k in DEFAULTS})

    name = mapping['name'].strip()
    if os.sep in name or (os.altsep and os.altsep in name):
        raise ConfigError(f"name must not contain a path separator, got {name!r}.")

    return Settings(
        name=name,
        source_directory=os.path.expanduser(mapping['source_directory'].strip()),
        destination_root=os.path.expanduser(mapping['destination_root'].strip()),
        daily_days=parse_days(values['daily_days'], 'daily_days'),
        weekly_enabled=parse_bool(values['weekly_enabled'], 'weekly_enabled'),
        weekly_trigger_day=parse_int(values['weekly_trigger_day'],
                                     'weekly_trigger_day', 1, 7),
        weekly_retention_weeks=parse_int(values['weekly_retention_weeks'],
                                         'weekly_retention_weeks', 0),
        monthly_enabled=parse_bool(values['monthly_enabled'], 'monthly_enabled'),
        monthly_trigger_day=parse_int(values['monthly_trigger_day'],
                                      'monthly_trigger_day', 1, 31),
        monthly_retention_months=parse_int(values['monthly_retention_months'],
                                           'monthly_retention_months', 0),
        yearly_enabled=parse_bool(values['yearly_enabled'], 'yearly_enabled'),
        yearly_trigger_day_of_year=parse_int(values['yearly_trigger_day_of_year'],
                                             'yearly_trigger_day_of_year', 0, 366),
        yearly_retention_years=parse_int(values['yearly_retention_years'],
                                         'yearly_retention_years', 0),
    )


def load_settings(config_path):
    ''' Read the [backup] section of an INI file into Settings. '''
    parser = configparser.ConfigParser()
    try:
        read_files = parser.read(config_path)
    except configparser.Error as e:
        raise ConfigError(f"Config file {config_path} is malformed: {e}") from e
    if not read_files:
        raise ConfigError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return settings_from_mapping(dict(parser[CONFIG_SECTION].items()))


def _ensure_writable_dir(path):
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise DestinationUnwritableError(f"Cannot create {path}: {e}") from e
    if not os.access(path, os.W_OK | os.X_OK):
        raise DestinationUnwritableError(f"Directory is not writable: {path}")


def check_paths(settings):
    '''
    Pre-flight: the source must be a readable directory, and the destination
    root plus one directory per tier must exist and be writable. Creates
    whatever is missing.
    '''
    source = settings.source_directory
    if not os.path.isdir(source):
        raise SourceNotFoundError(f"Source directory not found: {source}")
    if not os.access(source, os.R_OK | os.X_OK):
        raise SourceNotFoundError(f"Source directory is not readable: {source}")

    _ensure_writable_dir(settings.destination_root)
    for tier in TIER_NAMES:
        _ensure_writable_dir(settings.tier_directory(tier))
