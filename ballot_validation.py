#!/usr/bin/env python3
"""
POA Governance Ballot Validation

Pre-flight checks run against a new-ballot form before a transaction is
spent on it. Validation is a pure function of the form, the current time and
the configured duration limits, so it needs no network access.
"""

import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from web3 import Web3

from ballot_contracts import BallotParams, KeysChange, ProxyChange
from governance_utils import (
    MAX_BALLOT_DURATION_DAYS, MIN_BALLOT_DURATION_DAYS, START_TIME_OFFSET_MINUTES,
    BallotType, KeysBallotType, KeyType, to_utc, utc_now
)

# Keys ballot fields that may be left blank
OPTIONAL_KEYS_FIELDS = ('new_voting_key', 'new_payout_key')


@dataclass
class ValidatorPersonalData:
    """Personal data required when a ballot introduces a new validator"""
    full_name: str = ''
    address: str = ''
    state: str = ''
    zip_code: str = ''
    license_id: str = ''
    expiration_date: str = ''


@dataclass
class KeysBallotFields:
    keys_ballot_type: Any = ''
    key_type: Any = ''
    affected_key: str = ''
    mining_key: str = ''
    new_voting_key: str = ''
    new_payout_key: str = ''


@dataclass
class MinThresholdBallotFields:
    proposed_value: Any = ''


@dataclass
class ProxyBallotFields:
    proposed_address: str = ''
    contract_type: Any = ''


@dataclass
class BallotForm:
    """Raw user input for a new ballot"""
    ballot_type: Optional[BallotType] = None
    memo: str = ''
    end_time: Optional[datetime] = None
    is_new_validator_personal_data: bool = False
    validator: ValidatorPersonalData = field(default_factory=ValidatorPersonalData)
    keys: KeysBallotFields = field(default_factory=KeysBallotFields)
    min_threshold: MinThresholdBallotFields = field(default_factory=MinThresholdBallotFields)
    proxy: ProxyBallotFields = field(default_factory=ProxyBallotFields)

    def to_params(self, start_time: datetime) -> BallotParams:
        """Convert a validated form into contract parameters"""
        if self.ballot_type == BallotType.KEYS:
            proposed_value = KeysChange(
                affected_key=self.keys.affected_key,
                affected_key_type=KeyType(int(self.keys.key_type)),
                mining_key=self.keys.mining_key,
                ballot_type=KeysBallotType(int(self.keys.keys_ballot_type)),
                new_voting_key=self.keys.new_voting_key,
                new_payout_key=self.keys.new_payout_key
            )
        elif self.ballot_type == BallotType.MIN_THRESHOLD:
            proposed_value = int(self.min_threshold.proposed_value)
        elif self.ballot_type == BallotType.PROXY:
            proposed_value = ProxyChange(
                proposed_address=self.proxy.proposed_address,
                contract_type=int(self.proxy.contract_type)
            )
        else:
            raise ValueError("Ballot type is not selected")

        return BallotParams(
            start_time=int(to_utc(start_time).timestamp()),
            end_time=int(to_utc(self.end_time).timestamp()),
            proposed_value=proposed_value,
            memo=self.memo
        )


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    reason: Optional[str] = None
    rule: Optional[str] = None

    def __bool__(self) -> bool:
        return self.is_valid


PASSED = ValidationResult(True)


def _is_empty(value: Any) -> bool:
    return value is None or str(value) == ''


def _minutes_rounded_up(delta: timedelta) -> int:
    """Minutes in a timedelta, a partial minute counting as a whole one"""
    return math.ceil(delta / timedelta(minutes=1))


def _whole_hours(delta: timedelta) -> int:
    return int(delta / timedelta(hours=1))


class BallotValidationEngine:
    """
    Checks a BallotForm against the ballot rules, stopping at the first failure.

    Rules, in order:
      1. new validator personal data is complete
      2. memo is set
      3. end time is at least the minimum duration away
      4. end time is at most the maximum duration away
      5. the payload of the selected ballot type is complete and well-formed
      6. a ballot type is selected
    """

    def __init__(self, min_duration_days: int = MIN_BALLOT_DURATION_DAYS,
                 max_duration_days: int = MAX_BALLOT_DURATION_DAYS,
                 start_time_offset_minutes: int = START_TIME_OFFSET_MINUTES,
                 is_address: Callable[[Any], bool] = Web3.is_address) -> None:
        self.min_duration_days = min_duration_days
        self.max_duration_days = max_duration_days
        self.start_time_offset_minutes = start_time_offset_minutes
        self.is_address = is_address

    def start_time(self, now: Optional[datetime] = None) -> datetime:
        """Start time a ballot created at ``now`` gets"""
        now = to_utc(now) if now is not None else utc_now()
        return now + timedelta(minutes=self.start_time_offset_minutes)

    def validate(self, form: BallotForm, now: Optional[datetime] = None) -> ValidationResult:
        now = to_utc(now) if now is not None else utc_now()

        for check in (
            self._check_validator_data,
            self._check_memo,
            self._check_min_duration,
            self._check_max_duration,
            self._check_payload,
            self._check_ballot_type,
        ):
            result = check(form, now)
            if not result.is_valid:
                return result
        return PASSED

    def _check_validator_data(self, form: BallotForm, now: datetime) -> ValidationResult:
        if form.is_new_validator_personal_data:
            for validator_field in fields(form.validator):
                if _is_empty(getattr(form.validator, validator_field.name)):
                    return ValidationResult(
                        False, f"Validator {validator_field.name} is empty", 'validator_data'
                    )
        return PASSED

    def _check_memo(self, form: BallotForm, now: datetime) -> ValidationResult:
        if not form.memo:
            return ValidationResult(False, "Description cannot be empty", 'memo')
        return PASSED

    def _duration_hours(self, end_time: datetime, now: datetime) -> int:
        return max(_whole_hours(end_time - self.start_time(now)), 0)

    def _check_min_duration(self, form: BallotForm, now: datetime) -> ValidationResult:
        if form.end_time is None:
            return ValidationResult(False, "Ballot end time is empty", 'min_duration')

        end_time = to_utc(form.end_time)
        min_duration_hours = self.min_duration_days * 24
        min_end_time = now + timedelta(hours=min_duration_hours)
        if end_time < min_end_time:
            needed_minutes = _minutes_rounded_up(min_end_time - end_time)
            needed_hours = needed_minutes // 60
            needed_minutes -= needed_hours * 60
            duration = self._duration_hours(end_time, now)
            return ValidationResult(
                False,
                f"Ballot end time should be at least {min_duration_hours} hours from now "
                f"in UTC time. Current duration is {duration} hours. Please add "
                f"{needed_hours} hours and {needed_minutes} minutes in order to set "
                f"correct end time",
                'min_duration'
            )
        return PASSED

    def _check_max_duration(self, form: BallotForm, now: datetime) -> ValidationResult:
        end_time = to_utc(form.end_time)
        max_end_time = now + timedelta(days=self.max_duration_days)
        if end_time > max_end_time:
            duration = self._duration_hours(end_time, now)
            return ValidationResult(
                False,
                f"Ballot end time should not be more than {self.max_duration_days} days "
                f"from now in UTC time. Current duration is {duration} hours.",
                'max_duration'
            )
        return PASSED

    def _check_payload(self, form: BallotForm, now: datetime) -> ValidationResult:
        if form.ballot_type == BallotType.KEYS:
            for keys_field in fields(form.keys):
                if keys_field.name in OPTIONAL_KEYS_FIELDS:
                    continue
                if _is_empty(getattr(form.keys, keys_field.name)):
                    return ValidationResult(False, f"Ballot {keys_field.name} is empty", 'payload')
            if not self.is_address(form.keys.affected_key):
                return ValidationResult(False, "Ballot affected_key isn't address", 'affected_key')
            if not self.is_address(form.keys.mining_key):
                return ValidationResult(False, "Ballot mining_key isn't address", 'mining_key')

        elif form.ballot_type == BallotType.MIN_THRESHOLD:
            for threshold_field in fields(form.min_threshold):
                if _is_empty(getattr(form.min_threshold, threshold_field.name)):
                    return ValidationResult(False, f"Ballot {threshold_field.name} is empty", 'payload')

        elif form.ballot_type == BallotType.PROXY:
            for proxy_field in fields(form.proxy):
                if _is_empty(getattr(form.proxy, proxy_field.name)):
                    return ValidationResult(False, f"Ballot {proxy_field.name} is empty", 'payload')
            if not self.is_address(form.proxy.proposed_address):
                return ValidationResult(False, "Ballot proposed_address isn't address", 'proposed_address')

        return PASSED

    def _check_ballot_type(self, form: BallotForm, now: datetime) -> ValidationResult:
        if not isinstance(form.ballot_type, BallotType):
            return ValidationResult(False, "Ballot type is empty", 'ballot_type')
        return PASSED
