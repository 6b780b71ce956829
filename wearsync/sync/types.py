"""Tracked data types and how they map onto the sync payload."""

import logging
from enum import Enum
from typing import Iterable

logger = logging.getLogger(__name__)

SECTION_RECORDS = "records"
SECTION_WORKOUTS = "workouts"
SECTION_SLEEP = "sleep"
PAYLOAD_SECTIONS = (SECTION_RECORDS, SECTION_WORKOUTS, SECTION_SLEEP)


class HealthDataType(str, Enum):
    """Well-known wearable data kinds."""

    # Activity
    STEPS = "steps"
    DISTANCE_WALKING_RUNNING = "distanceWalkingRunning"
    DISTANCE_CYCLING = "distanceCycling"
    FLIGHTS_CLIMBED = "flightsClimbed"
    WALKING_SPEED = "walkingSpeed"
    WALKING_STEP_LENGTH = "walkingStepLength"
    WALKING_ASYMMETRY = "walkingAsymmetryPercentage"
    WALKING_DOUBLE_SUPPORT = "walkingDoubleSupportPercentage"
    SIX_MINUTE_WALK = "sixMinuteWalkTestDistance"
    ACTIVE_ENERGY = "activeEnergy"
    BASAL_ENERGY = "basalEnergy"
    RESTING_ENERGY = "restingEnergy"

    # Vitals
    HEART_RATE = "heartRate"
    RESTING_HEART_RATE = "restingHeartRate"
    HRV_SDNN = "heartRateVariabilitySDNN"
    VO2_MAX = "vo2Max"
    OXYGEN_SATURATION = "oxygenSaturation"
    BLOOD_OXYGEN = "bloodOxygen"
    RESPIRATORY_RATE = "respiratoryRate"

    # Body
    BODY_MASS = "bodyMass"
    HEIGHT = "height"
    BMI = "bmi"
    BODY_FAT = "bodyFatPercentage"
    LEAN_BODY_MASS = "leanBodyMass"
    WAIST_CIRCUMFERENCE = "waistCircumference"
    BODY_TEMPERATURE = "bodyTemperature"

    # Clinical
    BLOOD_GLUCOSE = "bloodGlucose"
    INSULIN_DELIVERY = "insulinDelivery"
    BLOOD_PRESSURE_SYSTOLIC = "bloodPressureSystolic"
    BLOOD_PRESSURE_DIASTOLIC = "bloodPressureDiastolic"
    BLOOD_PRESSURE = "bloodPressure"

    # Sleep & mindfulness
    SLEEP = "sleep"
    MINDFUL_SESSION = "mindfulSession"

    # Reproductive health
    MENSTRUAL_FLOW = "menstrualFlow"
    CERVICAL_MUCUS_QUALITY = "cervicalMucusQuality"
    OVULATION_TEST_RESULT = "ovulationTestResult"
    SEXUAL_ACTIVITY = "sexualActivity"

    # Nutrition
    DIETARY_ENERGY = "dietaryEnergyConsumed"
    DIETARY_CARBOHYDRATES = "dietaryCarbohydrates"
    DIETARY_PROTEIN = "dietaryProtein"
    DIETARY_FAT = "dietaryFatTotal"
    DIETARY_WATER = "dietaryWater"

    WORKOUT = "workout"


KNOWN_TYPES = frozenset(t.value for t in HealthDataType)

# Correlation types are not queried directly; their parts are.
NON_QUERYABLE_TYPES = frozenset({HealthDataType.BLOOD_PRESSURE.value})

_SECTION_BY_TYPE = {
    HealthDataType.WORKOUT.value: SECTION_WORKOUTS,
    HealthDataType.SLEEP.value: SECTION_SLEEP,
    "sleepAnalysis": SECTION_SLEEP,
}

_TYPE_PREFIXES = (
    "HKQuantityTypeIdentifier",
    "HKCategoryTypeIdentifier",
    "HKCorrelationTypeIdentifier",
)


def parse_tracked_types(names: Iterable[str]) -> list[str]:
    """Normalize configured type identifiers.

    Keeps the configured order, drops blanks and duplicates. Unknown
    identifiers are kept (providers may define their own) but logged.
    """
    result: list[str] = []
    seen: set[str] = set()
    for raw in names:
        name = raw.value if isinstance(raw, HealthDataType) else str(raw).strip()
        if not name or name in seen:
            continue
        if name not in KNOWN_TYPES:
            logger.warning(f"Unknown data type '{name}' - passing through to provider")
        seen.add(name)
        result.append(name)
    return result


def queryable_types(types: Iterable[str]) -> list[str]:
    """Types that can be queried from the provider, in configured order."""
    return [t for t in types if t not in NON_QUERYABLE_TYPES]


def payload_section(type_id: str) -> str:
    """Wire section ("records", "workouts" or "sleep") for a type."""
    return _SECTION_BY_TYPE.get(short_type_name(type_id), SECTION_RECORDS)


def short_type_name(type_id: str) -> str:
    """Strip provider prefixes from a type identifier for display."""
    for prefix in _TYPE_PREFIXES:
        if type_id.startswith(prefix):
            name = type_id[len(prefix):]
            return name[:1].lower() + name[1:]
    if type_id == "HKWorkoutType":
        return HealthDataType.WORKOUT.value
    return type_id
