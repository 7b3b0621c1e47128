"""
Read-only host facts, used for diagnostic reporting only.

Nothing here influences scheduling. Every accessor degrades to an empty
string (or "Serial Unknown") instead of raising.
"""

import locale
import logging
import platform
import plistlib
import re
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

SERIAL_UNKNOWN = "Serial Unknown"
DMI_DIR = Path("/sys/class/dmi/id")
SERVER_INFO_RESOURCES = Path(
    "/System/Library/PrivateFrameworks/ServerInformation.framework/Versions/A/Resources"
)


def _command_output(argv: List[str]) -> str:
    try:
        result = subprocess.run(argv, capture_output=True, text=True, check=False, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"{argv[0]} failed: {e}")
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def _read_dmi(name: str) -> str:
    try:
        return (DMI_DIR / name).read_text().strip()
    except OSError:
        return ""


def _is_macos() -> bool:
    return sys.platform == "darwin"


def os_version() -> str:
    """OS version, e.g. '14.4.1' on macOS or the kernel release elsewhere."""
    if _is_macos():
        return platform.mac_ver()[0]
    return platform.release()


def os_build_version() -> str:
    """OS build identifier (kern.osversion on macOS)."""
    if _is_macos():
        return _command_output(["/usr/sbin/sysctl", "-n", "kern.osversion"])
    return platform.version()


def hardware_model() -> str:
    """Hardware model identifier, e.g. 'MacBookPro18,3'."""
    if _is_macos():
        return _command_output(["/usr/sbin/sysctl", "-n", "hw.model"])
    return _read_dmi("product_name") or platform.machine()


def _language() -> str:
    language = (locale.getlocale()[0] or "").split("_")[0]
    return language if language and language not in ("C", "POSIX") else "en"


def _arm_marketing_model() -> str:
    """product-description of the Apple silicon product node, or ''."""
    output = _command_output(["/usr/sbin/ioreg", "-ar", "-k", "product-description", "-d", "1"])
    if not output:
        return ""
    try:
        entries = plistlib.loads(output.encode("utf-8"))
    except (plistlib.InvalidFileException, ValueError):
        return ""
    if isinstance(entries, dict):
        entries = [entries]
    for entry in entries:
        value = entry.get("product-description")
        if isinstance(value, bytes):
            return value.decode("utf-8", "replace").rstrip("\0")
    return ""


def _intel_marketing_model(model: str, language: Optional[str] = None) -> str:
    """
    Marketing name of an Intel Mac from the localized SIMachineAttributes
    table, or the model identifier itself when it is not listed.
    """
    language = language or _language()
    path = SERVER_INFO_RESOURCES / f"{language}.lproj" / "SIMachineAttributes.plist"
    try:
        with open(path, "rb") as f:
            attributes = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError) as e:
        logger.debug(f"Cannot read {path}: {e}")
        return model

    entry = attributes.get(model) if isinstance(attributes, dict) else None
    localizable = entry.get("_LOCALIZABLE_") if isinstance(entry, dict) else None
    if isinstance(localizable, dict):
        return localizable.get("marketingModel") or model
    return model


def marketing_model() -> str:
    """Human readable model name, falling back to the hardware model."""
    if _is_macos():
        return _arm_marketing_model() or _intel_marketing_model(hardware_model())
    product = _read_dmi("product_version")
    if product:
        return f"{_read_dmi('sys_vendor')} {product}".strip()
    return hardware_model()


def serial_number() -> str:
    """Device serial number, or 'Serial Unknown'."""
    if _is_macos():
        output = _command_output(["/usr/sbin/ioreg", "-c", "IOPlatformExpertDevice", "-d", "2"])
        match = re.search(r'"IOPlatformSerialNumber"\s*=\s*"([^"]+)"', output)
        serial = match.group(1).strip() if match else ""
    else:
        serial = _read_dmi("product_serial")
    return serial or SERIAL_UNKNOWN


def host_facts() -> Dict[str, str]:
    return {
        "os_version": os_version(),
        "os_build": os_build_version(),
        "hardware_model": hardware_model(),
        "marketing_model": marketing_model(),
        "serial_number": serial_number(),
    }
