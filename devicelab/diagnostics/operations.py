"""Operation-mode test bodies.

Each operation drives the device through configure, act, verify and cleanup
phases and returns a result dict carrying ``success``. Cleanup runs in a
``finally`` block so it is attempted whatever the verification outcome.
"""
from __future__ import annotations

import base64
import binascii
import os
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from devicelab.config import EngineSettings
from devicelab.diagnostics.context import RunContext
from devicelab.diagnostics.models import TestDefinition
from devicelab.errors import VerificationFailure
from devicelab.services.command_channel import CommandResponse

Operation = Callable[[RunContext], Awaitable[Dict[str, Any]]]
# worst-case wall time in ms for a definition and its validated parameters
Allowance = Callable[[TestDefinition, Dict[str, Any], EngineSettings], float]

OPERATIONS: Dict[str, Operation] = {}
ALLOWANCES: Dict[str, Allowance] = {}

LED_CYCLES = {"blink": 3, "pulse": 3, "solid": 1}
PULSE_LEVELS = (0, 64, 128, 255, 128, 64)
LOOPBACK_SETTLE_S = 0.05
SD_TEST_DIR = "/sdcard"


def operation(name: str) -> Callable[[Operation], Operation]:
    def register(func: Operation) -> Operation:
        OPERATIONS[name] = func
        return func

    return register


def allowance(name: str) -> Callable[[Allowance], Allowance]:
    def register(func: Allowance) -> Allowance:
        ALLOWANCES[name] = func
        return func

    return register


def get_operation(name: str) -> Operation:
    try:
        return OPERATIONS[name]
    except KeyError:
        raise ValueError(f"No operation registered for test {name}") from None


def _require(response: CommandResponse, command: str) -> CommandResponse:
    if not response.success:
        reason = response.message or "no reason given"
        raise VerificationFailure(f"Device rejected {command}: {reason}")
    return response


def _number(value: Any, what: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise VerificationFailure(f"Device returned an invalid {what}: {value!r}") from None


def _decode_base64(content: Optional[str]) -> bytes:
    if not content:
        return b""
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError):
        return b""


@allowance("led")
def led_allowance(definition, params, settings) -> float:
    cycles = LED_CYCLES[params["pattern"]]
    writes = {"pulse": cycles * len(PULSE_LEVELS), "blink": cycles * 2}.get(params["pattern"], cycles)
    return params["duration"] + (writes + 2) * settings.command_timeout_ms


@operation("led")
async def led(ctx: RunContext) -> Dict[str, Any]:
    pin = ctx.param("pin")
    duration = ctx.param("duration")
    pattern = ctx.param("pattern")
    cycles = LED_CYCLES[pattern]
    seconds = duration / 1000

    await ctx.progress(10, f"Configuring GPIO {pin} as output")
    try:
        _require(await ctx.send("gpio-mode", {"pin": pin, "mode": "output"}), "gpio-mode")
        for cycle in range(cycles):
            await ctx.progress(20 + 70 * cycle / cycles, f"LED {pattern} cycle {cycle + 1}/{cycles}")
            if pattern == "pulse":
                step = seconds / cycles / len(PULSE_LEVELS)
                for level in PULSE_LEVELS:
                    _require(
                        await ctx.send("gpio-write", {"pin": pin, "value": level, "type": "pwm"}),
                        "gpio-write",
                    )
                    await ctx.sleep(step)
                continue
            _require(
                await ctx.send("gpio-write", {"pin": pin, "value": 1, "type": "digital"}),
                "gpio-write",
            )
            if pattern == "solid":
                await ctx.sleep(seconds)
                continue
            half_period = seconds / (cycles * 2)
            await ctx.sleep(half_period)
            _require(
                await ctx.send("gpio-write", {"pin": pin, "value": 0, "type": "digital"}),
                "gpio-write",
            )
            await ctx.sleep(half_period)
    finally:
        await ctx.cleanup("gpio-write", {"pin": pin, "value": 0, "type": "digital"})

    return {"pin": pin, "pattern": pattern, "duration": duration, "cycles": cycles, "success": True}


@allowance("gpioLoopback")
def gpio_loopback_allowance(definition, params, settings) -> float:
    bits = len(params["testPattern"])
    return (3 + bits * 2) * settings.command_timeout_ms + bits * LOOPBACK_SETTLE_S * 1000


@operation("gpioLoopback")
async def gpio_loopback(ctx: RunContext) -> Dict[str, Any]:
    output_pin = ctx.param("outputPin")
    input_pin = ctx.param("inputPin")
    pattern = ctx.param("testPattern")
    if output_pin == input_pin:
        raise VerificationFailure("outputPin and inputPin must be different pins")

    steps: List[Dict[str, Any]] = []
    await ctx.progress(5, f"Configuring GPIO {output_pin} -> GPIO {input_pin}")
    try:
        _require(await ctx.send("gpio-mode", {"pin": output_pin, "mode": "output"}), "gpio-mode")
        _require(
            await ctx.send("gpio-mode", {"pin": input_pin, "mode": "input", "pull": "down"}),
            "gpio-mode",
        )
        for index, bit in enumerate(pattern):
            expected = int(bit)
            await ctx.progress(
                10 + 80 * index / len(pattern), f"Writing {expected} to GPIO {output_pin}"
            )
            _require(
                await ctx.send(
                    "gpio-write", {"pin": output_pin, "value": expected, "type": "digital"}
                ),
                "gpio-write",
            )
            await ctx.sleep(LOOPBACK_SETTLE_S)
            reading = _require(
                await ctx.send("gpio-read", {"pin": input_pin, "type": "digital"}), "gpio-read"
            )
            value = int(_number(reading.field("value"), "pin level"))
            steps.append(
                {"step": index + 1, "written": expected, "read": value, "match": value == expected}
            )
    finally:
        await ctx.cleanup("gpio-write", {"pin": output_pin, "value": 0, "type": "digital"})

    mismatches = [step["step"] for step in steps if not step["match"]]
    result: Dict[str, Any] = {
        "outputPin": output_pin,
        "inputPin": input_pin,
        "pattern": pattern,
        "steps": steps,
        "mismatches": mismatches,
        "success": not mismatches,
    }
    if mismatches:
        result["error"] = f"Read-back mismatch at step(s) {', '.join(map(str, mismatches))}"
    return result


@allowance("microphone")
def microphone_allowance(definition, params, settings) -> float:
    return params["duration"] + settings.poll_interval_ms + 4 * settings.command_timeout_ms


@operation("microphone")
async def microphone(ctx: RunContext) -> Dict[str, Any]:
    duration = ctx.param("duration")
    sensitivity = ctx.param("sensitivity")
    # levels are reported as 0-100; higher sensitivity lowers the bar
    threshold = round((100 - sensitivity) / 4, 2)
    peaks: List[float] = []

    await ctx.progress(5, "Starting microphone capture")
    try:
        _require(await ctx.send("audio-start", {"mode": "level"}), "audio-start")
        started = time.monotonic()
        while True:
            reading = _require(await ctx.send("audio-level"), "audio-level")
            peaks.append(_number(reading.field("peak", 0), "audio level"))
            elapsed = time.monotonic() - started
            if elapsed * 1000 >= duration:
                break
            await ctx.progress(
                10 + 80 * min(1.0, elapsed * 1000 / duration), f"Sampling audio ({len(peaks)} samples)"
            )
            await ctx.sleep(ctx.poll_interval)
    finally:
        await ctx.cleanup("audio-stop")

    peak = max(peaks, default=0.0)
    result: Dict[str, Any] = {
        "duration": duration,
        "sensitivity": sensitivity,
        "threshold": threshold,
        "samples": len(peaks),
        "peak": peak,
        "average": round(sum(peaks) / len(peaks), 2) if peaks else 0.0,
        "success": peak > threshold,
    }
    if not result["success"]:
        result["error"] = f"Peak level {peak} did not exceed threshold {threshold}"
    return result


@allowance("camera")
def camera_allowance(definition, params, settings) -> float:
    return definition.timeout_ms + 2 * settings.command_timeout_ms


@operation("camera")
async def camera(ctx: RunContext) -> Dict[str, Any]:
    resolution = ctx.param("resolution")
    min_bytes = ctx.param("minBytes")
    previous: Optional[str] = None

    await ctx.progress(10, f"Configuring camera for {resolution}")
    try:
        configured = _require(
            await ctx.send("configure-webcam", {"resolution": resolution}), "configure-webcam"
        )
        previous = configured.field("previous")
        await ctx.progress(40, "Capturing image")
        capture = _require(
            await ctx.send("capture-image", {}, timeout_ms=ctx.definition.timeout_ms),
            "capture-image",
        )
        size = capture.field("size")
        if size is None:
            size = len(_decode_base64(capture.field("image")))
        size = int(_number(size, "image size"))
    finally:
        if previous and previous != resolution:
            await ctx.cleanup("configure-webcam", {"resolution": previous})

    result: Dict[str, Any] = {
        "resolution": resolution,
        "bytes": size,
        "minBytes": min_bytes,
        "success": size >= min_bytes,
    }
    if not result["success"]:
        result["error"] = f"Image too small ({size} < {min_bytes} bytes)"
    return result


@allowance("gps")
def gps_allowance(definition, params, settings) -> float:
    # status, enable, last poll, location at 3x, disable
    return params["timeout"] * 1000 + settings.poll_interval_ms + 7 * settings.command_timeout_ms


@operation("gps")
async def gps(ctx: RunContext) -> Dict[str, Any]:
    timeout = ctx.param("timeout")
    min_satellites = ctx.param("minSatellites")
    was_enabled = True
    satellites = 0

    await ctx.progress(5, "Checking GPS receiver")
    try:
        status = _require(await ctx.send("gps-status"), "gps-status")
        was_enabled = bool(status.field("enabled"))
        if not was_enabled:
            _require(await ctx.send("gps-set-enabled", {"enabled": True}), "gps-set-enabled")
        started = time.monotonic()
        fixed = False
        while True:
            status = _require(await ctx.send("gps-status"), "gps-status")
            satellites = int(_number(status.field("satellites", 0), "satellite count"))
            if status.field("fix") and satellites >= min_satellites:
                fixed = True
                break
            elapsed = time.monotonic() - started
            if elapsed >= timeout:
                break
            await ctx.progress(
                10 + 80 * elapsed / timeout, f"Waiting for fix ({satellites} satellites)"
            )
            await ctx.sleep(ctx.poll_interval)
        time_to_fix = round(time.monotonic() - started, 1)
        if not fixed:
            return {
                "fix": False,
                "satellites": satellites,
                "timeout": timeout,
                "success": False,
                "error": f"No fix with {min_satellites}+ satellites within {timeout}s",
            }
        location = _require(
            await ctx.send("gps-location", timeout_ms=ctx.settings.command_timeout_ms * 3),
            "gps-location",
        )
    finally:
        if not was_enabled:
            await ctx.cleanup("gps-set-enabled", {"enabled": False})

    return {
        "fix": True,
        "satellites": satellites,
        "latitude": location.field("latitude"),
        "longitude": location.field("longitude"),
        "altitude": location.field("altitude"),
        "timeToFix": time_to_fix,
        "success": True,
    }


@allowance("sdCard")
def sd_card_allowance(definition, params, settings) -> float:
    return 2 * definition.timeout_ms + 2 * settings.command_timeout_ms


@operation("sdCard")
async def sd_card(ctx: RunContext) -> Dict[str, Any]:
    size = ctx.param("fileSize")
    path = f"{SD_TEST_DIR}/.devicelab_{ctx.run_id}.bin"
    expected = os.urandom(size)
    timeout = ctx.definition.timeout_ms

    await ctx.progress(10, "Checking SD card")
    try:
        info = _require(await ctx.send("storage-info"), "storage-info")
        if info.field("mounted") is False:
            return {"path": path, "success": False, "error": "SD card not mounted"}
        await ctx.progress(30, f"Writing {size} bytes")
        started = time.monotonic()
        _require(
            await ctx.send(
                "storage-write",
                {"path": path, "content": base64.b64encode(expected).decode("ascii"), "append": False},
                timeout_ms=timeout,
            ),
            "storage-write",
        )
        write_ms = round((time.monotonic() - started) * 1000, 1)
        await ctx.progress(60, "Reading file back")
        started = time.monotonic()
        read = _require(await ctx.send("storage-read", {"path": path}, timeout_ms=timeout), "storage-read")
        read_ms = round((time.monotonic() - started) * 1000, 1)
        actual = _decode_base64(read.field("content"))
    finally:
        await ctx.cleanup("storage-delete", {"items": [path]})

    match = actual == expected
    result: Dict[str, Any] = {
        "path": path,
        "bytesWritten": size,
        "bytesRead": len(actual),
        "writeMs": write_ms,
        "readMs": read_ms,
        "match": match,
        "success": match,
    }
    if not match:
        result["error"] = "Read-back content differs from written data"
    return result


@allowance("wifi")
def wifi_allowance(definition, params, settings) -> float:
    return params["timeout"] * 1000 + settings.poll_interval_ms + 3 * settings.command_timeout_ms


@operation("wifi")
async def wifi(ctx: RunContext) -> Dict[str, Any]:
    ssid = ctx.param("ssid")
    timeout = ctx.param("timeout")
    joined = False
    status: Optional[CommandResponse] = None

    await ctx.progress(10, f"Joining {ssid}")
    try:
        _require(
            await ctx.send("wifi-connect", {"ssid": ssid, "password": ctx.param("password", "")}),
            "wifi-connect",
        )
        started = time.monotonic()
        while True:
            status = _require(await ctx.send("wifi-status"), "wifi-status")
            if status.field("connected") and status.field("ssid") == ssid and status.field("ip"):
                joined = True
                break
            elapsed = time.monotonic() - started
            if elapsed >= timeout:
                break
            await ctx.progress(20 + 70 * elapsed / timeout, f"Waiting for {ssid}")
            await ctx.sleep(ctx.poll_interval)
    finally:
        if not joined:
            await ctx.cleanup("wifi-disconnect")

    result: Dict[str, Any] = {
        "ssid": ssid,
        "connected": joined,
        "ip": status.field("ip") if status else None,
        "rssi": status.field("rssi") if status else None,
        "success": joined,
    }
    if not joined:
        result["error"] = f"Not connected to {ssid} within {timeout}s"
    return result


@allowance("battery")
def battery_allowance(definition, params, settings) -> float:
    samples = params["samples"]
    return samples * settings.command_timeout_ms + (samples - 1) * params["interval"]


@operation("battery")
async def battery(ctx: RunContext) -> Dict[str, Any]:
    samples = ctx.param("samples")
    interval = ctx.param("interval") / 1000
    min_voltage = ctx.param("minVoltage")
    voltages: List[float] = []

    for index in range(samples):
        await ctx.progress(10 + 80 * index / samples, f"Sampling voltage {index + 1}/{samples}")
        reading = _require(await ctx.send("power-status"), "power-status")
        voltage = reading.field("voltage")
        if voltage is None and reading.field("batteryMv") is not None:
            voltage = _number(reading.field("batteryMv"), "battery voltage") / 1000
        voltages.append(round(_number(voltage, "battery voltage"), 3))
        if index < samples - 1:
            await ctx.sleep(interval)

    average = round(sum(voltages) / len(voltages), 3)
    result: Dict[str, Any] = {
        "samples": len(voltages),
        "voltages": voltages,
        "average": average,
        "min": min(voltages),
        "max": max(voltages),
        "minVoltage": min_voltage,
        "success": average > min_voltage,
    }
    if not result["success"]:
        result["error"] = f"Average voltage {average} V is not above {min_voltage} V"
    return result
