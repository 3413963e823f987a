#!/usr/bin/env python3
'''
Rotate grandfather-father-son backups.

Each run decides which tiers (manual, daily, weekly, monthly, yearly) are
due today, produces at most one archive, copies it into every due tier and
then expires the backup that has fallen out of each tier's retention window.

The file name is the only record of a backup's age:

    <YYYYMMDD>-<name>.tar.gz        daily, weekly, monthly, yearly
    <YYYYMMDDHHmm>-<name>.tar.gz    manual (never pruned)
'''
import argparse
import calendar
import fcntl
import logging
import os
import re
import shutil
import sys
import tarfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import FrozenSet, Optional, Union

from rotate_settings import (TIER_NAMES, RotateError, check_paths,
                             load_settings)

logger = logging.getLogger(__name__)

# --- Configuration ---

current_dir = os.path.dirname(os.path.realpath(__file__))
DEFAULT_CONFIG = os.path.join(current_dir, 'rotate.ini')

MANUAL, DAILY, WEEKLY, MONTHLY, YEARLY = TIER_NAMES
ARCHIVE_SUFFIX = '.tar.gz'
DATE_FORMAT = '%Y%m%d'
MANUAL_FORMAT = '%Y%m%d%H%M'
LOCK_NAME = '.rotate.lock'
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# The daily tier always keeps exactly one week.
DAILY_RETENTION_WEEKS = 1


class ArchiveError(RotateError):
    """Raised when the archive of the source directory cannot be produced."""


class LockError(RotateError):
    """Raised when another rotation already holds the destination lock."""


# --- Calendar helpers ---

def _as_date(moment):
    if isinstance(moment, datetime):
        return moment.date()
    return moment


def day_of_week(day):
    ''' ISO weekday, 1 = Monday .. 7 = Sunday. '''
    return day.isoweekday()


def day_of_year(day):
    ''' 1-based day of the year. '''
    return day.timetuple().tm_yday


def _shift_months(day, months):
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def periods_ago(day, count, unit):
    '''
    The calendar date `count` weeks, months or years before `day`.

    Months and years are calendar steps, not fixed day counts: the day of
    month is clamped to the length of the target month, so 31 March minus
    one month is the last day of February and 29 February minus one year
    is 28 February.
    '''
    day = _as_date(day)
    if unit == 'weeks':
        return day - timedelta(weeks=count)
    if unit == 'months':
        return _shift_months(day, -count)
    if unit == 'years':
        return _shift_months(day, -12 * count)
    raise ValueError(f"Unknown period unit: {unit}")


def day_of_year_ago(day, count):
    '''
    The date `count` years before `day` that has the same day of the year.

    Yearly backups fire on a day of the year, so their expiry has to be found
    the same way: across a leap year the month and day shift by one. Day 366
    maps to the last day of a common year.
    '''
    day = _as_date(day)
    year = day.year - count
    days_in_year = 366 if calendar.isleap(year) else 365
    offset = min(day_of_year(day), days_in_year) - 1
    return date(year, 1, 1) + timedelta(days=offset)


# --- Naming ---

def backup_name(day, name):
    return f"{day:{DATE_FORMAT}}-{name}{ARCHIVE_SUFFIX}"


def manual_backup_name(moment, name):
    return f"{moment:{MANUAL_FORMAT}}-{name}{ARCHIVE_SUFFIX}"


def parse_backup_date(filename, name):
    '''
    Return the creation date encoded in a scheduled backup name, or None
    when the file is not one of ours.
    '''
    pattern = r'^(\d{8})-' + re.escape(name) + re.escape(ARCHIVE_SUFFIX) + '$'
    match = re.match(pattern, filename)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), DATE_FORMAT).date()
    except ValueError:
        logger.warning("Could not parse date in file name: %s", filename)
        return None


# --- Tiers ---

@dataclass(frozen=True)
class Tier:
    name: str
    directory: str
    label: str
    enabled: bool = True
    # weekday set for daily, weekday for weekly, day of month for monthly,
    # day of year for yearly, unused for manual
    trigger: Union[FrozenSet[int], int, None] = None
    retention: Optional[int] = None
    unit: Optional[str] = None

    def name_for(self, moment):
        if self.name == MANUAL:
            return manual_backup_name(moment, self.label)
        return backup_name(moment, self.label)


def _retention(value):
    # 0 means keep forever
    return value if value > 0 else None


def build_tiers(settings):
    ''' Ordered mapping of tier name -> Tier for one run. '''
    def tier(name, **kwargs):
        return Tier(name=name, directory=settings.tier_directory(name),
                    label=settings.name, **kwargs)

    return {
        MANUAL: tier(MANUAL),
        DAILY: tier(DAILY, trigger=settings.daily_days,
                    retention=DAILY_RETENTION_WEEKS, unit='weeks'),
        WEEKLY: tier(WEEKLY, enabled=settings.weekly_enabled,
                     trigger=settings.weekly_trigger_day,
                     retention=_retention(settings.weekly_retention_weeks),
                     unit='weeks'),
        MONTHLY: tier(MONTHLY, enabled=settings.monthly_enabled,
                      trigger=settings.monthly_trigger_day,
                      retention=_retention(settings.monthly_retention_months),
                      unit='months'),
        YEARLY: tier(YEARLY, enabled=settings.yearly_enabled,
                     trigger=settings.yearly_trigger_day_of_year,
                     retention=_retention(settings.yearly_retention_years),
                     unit='years'),
    }


def list_tier(tier):
    ''' File names currently present in a tier directory. '''
    try:
        return set(os.listdir(tier.directory))
    except FileNotFoundError:
        return set()


# --- Evaluation ---

@dataclass(frozen=True)
class RunDecision:
    due: tuple = ()
    manual: bool = False

    @property
    def any_due(self):
        return bool(self.due)


def is_triggered(tier, day):
    ''' Whether today's calendar fields match the tier's trigger rule. '''
    if not tier.enabled:
        return False
    if tier.name == DAILY:
        return day_of_week(day) in tier.trigger
    if tier.name == WEEKLY:
        return day_of_week(day) == tier.trigger
    if tier.name == MONTHLY:
        return day.day == tier.trigger
    if tier.name == YEARLY:
        # 0 and 1 both mean the first of January
        return day_of_year(day) == (tier.trigger or 1)
    return False


def evaluate(today, action, tiers, existing):
    '''
    Decide which tiers are due.

    A manual action runs the manual tier only. Otherwise a scheduled tier is
    due when its trigger matches today and today's name is not yet present
    in it, so a second run on the same day does nothing.
    '''
    if action == MANUAL:
        return RunDecision(due=(MANUAL,), manual=True)
    if action is not None:
        raise ValueError(f"Unknown action: {action}")

    day = _as_date(today)
    due = []
    for name, tier in tiers.items():
        if name == MANUAL or not is_triggered(tier, day):
            continue
        if tier.name_for(day) in existing.get(name, set()):
            logger.info("%s backup for %s already exists, skipping", name, day)
            continue
        due.append(name)
    return RunDecision(due=tuple(due))


# --- Archive ---

def produce_archive(source_dir, artifact_path):
    '''
    Write a gzip-compressed tarball of source_dir to artifact_path.

    The archive is written beside the target and renamed into place, so the
    target either holds a complete archive or does not exist.
    '''
    partial = artifact_path + '.part'
    arcname = os.path.basename(os.path.normpath(source_dir))
    logger.info("Archiving %s to %s", source_dir, artifact_path)
    try:
        with tarfile.open(partial, 'w:gz') as tar:
            tar.add(source_dir, arcname=arcname)
        os.replace(partial, artifact_path)
    except (OSError, tarfile.TarError) as e:
        if os.path.exists(partial):
            os.remove(partial)
        raise ArchiveError(f"Could not archive {source_dir}: {e}") from e
    return artifact_path


# --- Distribution and pruning ---

@dataclass
class StepReport:
    done: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    def record_failure(self, action, path, error):
        logger.error("Could not %s %s: %s", action, path, error)
        self.failed.append((path, f"{action}: {error}"))


def plan_targets(decision, tiers, now):
    ''' (tier name, destination path) for every tier the decision writes to. '''
    return [(name, os.path.join(tiers[name].directory, tiers[name].name_for(now)))
            for name in decision.due]


def distribute(artifact, decision, tiers, now):
    '''
    Place the artifact into every due tier.

    Scheduled tiers each get a copy, then the staging artifact is removed.
    A manual run moves the artifact into the manual tier instead. Failures
    are recorded and the remaining tiers are still attempted.
    '''
    report = StepReport()
    targets = plan_targets(decision, tiers, now)

    if decision.manual:
        _, target = targets[0]
        try:
            shutil.move(artifact, target)
        except OSError as e:
            report.record_failure('move', artifact, e)
        else:
            logger.info("Stored manual backup %s", target)
            report.done.append(target)
        return report

    for name, target in targets:
        try:
            shutil.copy2(artifact, target)
        except OSError as e:
            report.record_failure('copy to', target, e)
            continue
        logger.info("Stored %s backup %s", name, target)
        report.done.append(target)

    try:
        os.remove(artifact)
    except OSError as e:
        report.record_failure('remove staging artifact', artifact, e)
    return report


def expired_names(tier, today):
    '''
    Names in the tier that have fallen out of its retention window.

    For weekly, monthly and yearly this is at most the one name a backup
    made exactly `retention` periods ago would carry. The daily tier keeps
    a fixed week, so every daily backup dated a week or more ago expires.
    Disabled tiers keep what they have.
    '''
    if tier.retention is None or not tier.enabled:
        return []
    day = _as_date(today)
    if tier.name == YEARLY:
        cutoff = day_of_year_ago(day, tier.retention)
    else:
        cutoff = periods_ago(day, tier.retention, tier.unit)
    present = list_tier(tier)

    if tier.name == DAILY:
        expired = []
        for filename in sorted(present):
            created = parse_backup_date(filename, tier.label)
            if created is not None and created <= cutoff:
                expired.append(filename)
        return expired

    expiry = tier.name_for(cutoff)
    if expiry in present:
        return [expiry]
    logger.debug("No %s backup named %s to prune", tier.name, expiry)
    return []


def prune(tiers, today, dry_run=False):
    ''' Delete expired backups from every tier with a finite retention. '''
    report = StepReport()
    for tier in tiers.values():
        for filename in expired_names(tier, today):
            path = os.path.join(tier.directory, filename)
            if dry_run:
                report.done.append(path)
                continue
            try:
                os.remove(path)
            except FileNotFoundError:
                logger.debug("%s disappeared before it could be pruned", path)
            except OSError as e:
                report.record_failure('delete', path, e)
            else:
                logger.info("Pruned %s backup %s", tier.name, path)
                report.done.append(path)
    return report


# --- Run ---

@contextmanager
def destination_lock(root):
    '''
    Hold an exclusive advisory lock on the destination root. Overlapping
    runs fail fast instead of racing on the same tiers.
    '''
    path = os.path.join(root, LOCK_NAME)
    with open(path, 'a') as handle:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockError(f"Another rotation is running (lock held on {path})") from None
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


@dataclass
class RunReport:
    decision: RunDecision = field(default_factory=RunDecision)
    planned: list = field(default_factory=list)
    distributed: StepReport = field(default_factory=StepReport)
    pruned: StepReport = field(default_factory=StepReport)

    @property
    def failures(self):
        return self.distributed.failed + self.pruned.failed


def run(settings, action=None, now=None, dry_run=False, producer=produce_archive):
    '''
    One rotation: pre-flight, lock, evaluate, produce, distribute, prune.

    Raises a RotateError subclass for anything that stops the run before a
    tier is written. Failures after that point are collected in the report.
    '''
    now = now or datetime.now()
    check_paths(settings)
    tiers = build_tiers(settings)
    report = RunReport()

    with destination_lock(settings.destination_root):
        existing = {name: list_tier(tier) for name, tier in tiers.items()}
        decision = evaluate(now, action, tiers, existing)
        report.decision = decision
        if not decision.any_due:
            logger.info("No tier is due on %s, nothing to do", f"{now:%Y-%m-%d}")
            return report

        logger.info("Tiers due: %s", ', '.join(decision.due))
        report.planned = plan_targets(decision, tiers, now)
        if dry_run:
            if not decision.manual:
                report.pruned = prune(tiers, now, dry_run=True)
            return report

        if decision.manual:
            staging_name = manual_backup_name(now, settings.name)
        else:
            staging_name = backup_name(now, settings.name)
        artifact = producer(settings.source_directory,
                            os.path.join(settings.destination_root, staging_name))

        report.distributed = distribute(artifact, decision, tiers, now)
        if decision.manual:
            return report
        report.pruned = prune(tiers, now)
    return report


# --- CLI ---

def parse_moment(value):
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected YYYY-MM-DD or YYYY-MM-DDTHH:MM, got {value!r}") from None


def create_arg_parser(argv=None):
    '''
    Create argument parser for terminal parameters.
    '''
    parser = argparse.ArgumentParser(description=("Rotate daily, weekly, monthly "
                                                  "and yearly backups."))
    parser.add_argument("action", nargs='?', choices=[MANUAL],
                        help="Run a manual backup instead of the schedule")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG,
                        help=f"INI file with a [backup] section (default: {DEFAULT_CONFIG})")
    parser.add_argument("--dry-run", action="store_true",
                        help="Show what would be written and pruned without touching backups")
    parser.add_argument("--date", type=parse_moment, default=None,
                        help="Rotate as if it were this date (default: now)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
                        help="Logging verbosity (default: INFO)")
    return parser.parse_args(argv)


def print_plan(report):
    print("\n--- Rotation Plan ---")
    print(f"Tiers due: {', '.join(report.decision.due) or 'none'}")
    if report.planned:
        print("\nFiles to be written:")
        for _, path in report.planned:
            print(f"  - {path}")
    if report.pruned.done:
        print("\nFiles to be pruned:")
        for path in report.pruned.done:
            print(f"  - {path}")
    print("\n--- DRY RUN ---")
    print("No files were written or deleted. Run without --dry-run to rotate.")


def main(argv=None):
    '''
    Entry point.
    '''
    args = create_arg_parser(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)

    try:
        settings = load_settings(args.config)
        report = run(settings, action=args.action, now=args.date,
                     dry_run=args.dry_run)
    except RotateError as e:
        logger.error("%s", e)
        return 1

    if args.dry_run:
        print_plan(report)
    if report.failures:
        logger.error("Rotation finished with %d failure(s)", len(report.failures))
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
