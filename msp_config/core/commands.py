"""MSP command identifiers used across the project."""

from enum import IntEnum


class MSPCommand(IntEnum):
    MSP_API_VERSION = 1
    MSP_FC_VARIANT = 2
    MSP_FC_VERSION = 3
    MSP_BOARD_INFO = 4
    MSP_BUILD_INFO = 5
    MSP_NAME = 10
    MSP_MODE_RANGES = 34
    MSP_SET_MODE_RANGE = 35
    MSP_FEATURE_CONFIG = 36
    MSP_SET_FEATURE_CONFIG = 37
    MSP_MIXER_CONFIG = 42
    MSP_SET_MIXER_CONFIG = 43
    MSP_REBOOT = 68
    MSP_STATUS = 101
    MSP_ATTITUDE = 108
    MSP_BOXNAMES = 116
    MSP_BOXIDS = 119
    MSP_EEPROM_WRITE = 250


class MSP2Command(IntEnum):
    """Extended command identifiers that only travel in MSP v2 frames."""

    COMMON_MOTOR_MIXER = 0x1005
    COMMON_SET_MOTOR_MIXER = 0x1006
    INAV_STATUS = 0x2000
    INAV_MIXER = 0x2010
    INAV_SET_MIXER = 0x2011
    INAV_SERVO_MIXER = 0x2020
    INAV_SET_SERVO_MIXER = 0x2021


def command_name(command: int) -> str:
    """Return a readable label for *command*, falling back to the number."""

    for enum in (MSPCommand, MSP2Command):
        try:
            return enum(command).name
        except ValueError:
            continue
    return str(command)
