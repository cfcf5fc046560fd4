"""Built-in diagnostic tests for the ESP32-S3 modem board."""
from __future__ import annotations

from typing import Dict, Optional, Tuple

from devicelab.diagnostics.models import (
    ParameterKind,
    ParameterSpec,
    StepSpec,
    TestDefinition,
)

NUMBER = ParameterKind.NUMBER
STRING = ParameterKind.STRING
ENUM = ParameterKind.ENUM
SECRET = ParameterKind.SECRET

CATEGORIES: Dict[str, Dict[str, str]] = {
    "modem": {"name": "Modem", "icon": "bi-broadcast"},
    "gpio": {"name": "GPIO", "icon": "bi-cpu"},
    "audio": {"name": "Audio", "icon": "bi-mic"},
    "camera": {"name": "Camera", "icon": "bi-camera"},
    "location": {"name": "Location", "icon": "bi-geo-alt"},
    "storage": {"name": "Storage", "icon": "bi-sd-card"},
    "network": {"name": "Network", "icon": "bi-wifi"},
    "power": {"name": "Power", "icon": "bi-battery-half"},
    "system": {"name": "System", "icon": "bi-clipboard-check"},
}


def _at(
    name: str, at: str, expect: Optional[str] = None, handler: Optional[str] = None
) -> StepSpec:
    return StepSpec(name=name, command="modem-at", payload={"command": at}, expect=expect, handler=handler)


DEFINITIONS: Tuple[TestDefinition, ...] = (
    TestDefinition(
        id="atCommands",
        name="Modem AT Commands",
        category="modem",
        icon="bi-terminal",
        description="Checks modem responsiveness, SIM state, signal and registration.",
        steps=(
            _at("Modem alive", "AT", expect="OK"),
            _at("SIM ready", "AT+CPIN?", expect="READY"),
            _at("Signal quality", "AT+CSQ", handler="signalQuality"),
            _at("Network registration", "AT+CREG?", handler="registration"),
            _at("Operator", "AT+COPS?", handler="operator"),
        ),
        timeout_ms=5000,
        estimated_seconds=10,
    ),
    TestDefinition(
        id="simCard",
        name="SIM Card",
        category="modem",
        icon="bi-sim",
        description="Reads SIM status and identifiers.",
        steps=(
            _at("PIN status", "AT+CPIN?", expect="READY"),
            _at("ICCID", "AT+CCID", handler="iccid"),
            _at("IMSI", "AT+CIMI", handler="imsi"),
        ),
        timeout_ms=5000,
        estimated_seconds=6,
    ),
    TestDefinition(
        id="led",
        name="LED Blink",
        category="gpio",
        icon="bi-lightbulb",
        description="Drives the status LED with the selected pattern.",
        parameters=(
            ParameterSpec("pin", NUMBER, default=2, minimum=0, maximum=48, integer=True, label="GPIO pin"),
            ParameterSpec(
                "duration", NUMBER, default=1000, minimum=100, maximum=10000, integer=True,
                label="Duration (ms)",
            ),
            ParameterSpec("pattern", ENUM, default="blink", choices=("blink", "solid", "pulse")),
        ),
        timeout_ms=15000,
        estimated_seconds=3,
    ),
    TestDefinition(
        id="gpioLoopback",
        name="GPIO Loopback",
        category="gpio",
        icon="bi-arrow-left-right",
        description="Writes a bit pattern on one pin and reads it back on a wired input pin.",
        parameters=(
            ParameterSpec("outputPin", NUMBER, default=2, minimum=0, maximum=48, integer=True),
            ParameterSpec("inputPin", NUMBER, default=4, minimum=0, maximum=48, integer=True),
            ParameterSpec("testPattern", STRING, default="0101", pattern=r"^[01]{1,32}$"),
        ),
        timeout_ms=20000,
        estimated_seconds=4,
    ),
    TestDefinition(
        id="microphone",
        name="Microphone",
        category="audio",
        icon="bi-mic",
        description="Samples the microphone level and compares the peak with a threshold.",
        parameters=(
            ParameterSpec(
                "duration", NUMBER, default=3000, minimum=500, maximum=30000, integer=True,
                label="Duration (ms)",
            ),
            ParameterSpec("sensitivity", NUMBER, default=50, minimum=1, maximum=100, integer=True),
        ),
        timeout_ms=40000,
        estimated_seconds=5,
    ),
    TestDefinition(
        id="camera",
        name="Camera Capture",
        category="camera",
        icon="bi-camera",
        description="Captures a frame and checks that image data is returned.",
        parameters=(
            ParameterSpec("resolution", ENUM, default="VGA", choices=("QVGA", "VGA", "SVGA", "HD")),
            ParameterSpec(
                "minBytes", NUMBER, default=1024, minimum=1, maximum=5_000_000, integer=True,
                label="Minimum image size (bytes)",
            ),
        ),
        timeout_ms=20000,
        estimated_seconds=5,
    ),
    TestDefinition(
        id="gps",
        name="GPS Fix",
        category="location",
        icon="bi-geo-alt",
        description="Enables the receiver and waits for a position fix.",
        parameters=(
            ParameterSpec(
                "timeout", NUMBER, default=60, minimum=5, maximum=600, integer=True,
                label="Timeout (s)",
            ),
            ParameterSpec("minSatellites", NUMBER, default=4, minimum=1, maximum=24, integer=True),
        ),
        timeout_ms=600000,
        estimated_seconds=60,
    ),
    TestDefinition(
        id="sdCard",
        name="SD Card Read/Write",
        category="storage",
        icon="bi-sd-card",
        description="Writes a scratch file, reads it back and deletes it.",
        parameters=(
            ParameterSpec(
                "fileSize", NUMBER, default=1024, minimum=1, maximum=1_048_576, integer=True,
                label="File size (bytes)",
            ),
        ),
        timeout_ms=30000,
        estimated_seconds=5,
    ),
    TestDefinition(
        id="wifi",
        name="Wi-Fi Join",
        category="network",
        icon="bi-wifi",
        description="Joins a Wi-Fi network and waits for an IP address.",
        parameters=(
            ParameterSpec("ssid", STRING, required=True, label="SSID"),
            ParameterSpec("password", SECRET, default=""),
            ParameterSpec(
                "timeout", NUMBER, default=20, minimum=5, maximum=120, integer=True,
                label="Timeout (s)",
            ),
        ),
        timeout_ms=120000,
        estimated_seconds=20,
    ),
    TestDefinition(
        id="battery",
        name="Battery Voltage",
        category="power",
        icon="bi-battery-half",
        description="Samples the supply voltage and checks the average.",
        parameters=(
            ParameterSpec("samples", NUMBER, default=5, minimum=1, maximum=100, integer=True),
            ParameterSpec(
                "interval", NUMBER, default=1000, minimum=50, maximum=60000, integer=True,
                label="Interval (ms)",
            ),
            ParameterSpec("minVoltage", NUMBER, default=3.3, minimum=0, maximum=5, label="Minimum (V)"),
        ),
        timeout_ms=120000,
        estimated_seconds=6,
    ),
    TestDefinition(
        id="fullSystem",
        name="Full System Test",
        category="system",
        icon="bi-clipboard-check",
        description="Runs every hardware test in sequence and summarises the outcome.",
        components=("atCommands", "led", "gpioLoopback", "microphone", "camera", "sdCard", "battery"),
        timeout_ms=300000,
        estimated_seconds=60,
    ),
)
