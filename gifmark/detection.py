"""
Backend probing and diagnostics.

Reports which decode/encode backends are usable on this machine, the
versions of the libraries they rely on, and which font the compositor
will pick.  Used by ``gifmark doctor``.
"""

from __future__ import annotations

import importlib
import logging
import platform
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from PIL import features

from gifmark.config import DEFAULT_FONT_NAMES, find_system_font
from gifmark.decoding import DECODE_BACKEND_PRIORITY
from gifmark.encoding import ENCODE_BACKEND_PRIORITY

logger = logging.getLogger(__name__)


@dataclass
class ToolProbe:
    """Result of probing a single external tool or library."""
    name: str
    found: bool
    path: Optional[str]
    version: Optional[str]
    notes: Optional[str] = None


def _probe_tool(name: str, version_flag: str = "--version") -> ToolProbe:
    which_path = shutil.which(name)
    if which_path is None:
        return ToolProbe(name=name, found=False, path=None, version=None)
    try:
        result = subprocess.run(
            [which_path, version_flag], capture_output=True, timeout=10,
        )
        output = (result.stdout or result.stderr).decode(errors="replace")
        first_line = output.strip().split("\n")[0].strip()
        return ToolProbe(name=name, found=True, path=which_path,
                         version=first_line or "unknown")
    except (subprocess.TimeoutExpired, OSError) as exc:
        return ToolProbe(name=name, found=True, path=which_path,
                         version=None, notes=f"Version check failed: {exc}")


def _probe_python_lib(import_name: str, display_name: str) -> ToolProbe:
    try:
        mod = importlib.import_module(import_name)
    except ImportError:
        return ToolProbe(name=display_name, found=False, path=None, version=None)
    version = getattr(mod, "__version__", "unknown")
    return ToolProbe(name=display_name, found=True, path=None, version=str(version))


def probe_system() -> Dict[str, ToolProbe]:
    """Probe the external tools and Python libraries gifmark can use."""
    tools: Dict[str, ToolProbe] = {}
    tools["imagemagick"] = _probe_tool("magick", "-version")
    tools["pillow"] = _probe_python_lib("PIL", "Pillow")
    tools["numpy"] = _probe_python_lib("numpy", "numpy")
    tools["pyyaml"] = _probe_python_lib("yaml", "PyYAML")
    tools["tqdm"] = _probe_python_lib("tqdm", "tqdm")
    if tools["pillow"].found and not features.check("freetype2"):
        tools["pillow"].notes = "Built without FreeType: only the bitmap default font is usable."
    return tools


@dataclass
class BackendStatus:
    stage: str
    name: str
    available: bool
    hint: str


def backend_status() -> List[BackendStatus]:
    """Availability of every registered backend, in priority order."""
    rows: List[BackendStatus] = []
    for stage, priority in (("decode", DECODE_BACKEND_PRIORITY),
                            ("encode", ENCODE_BACKEND_PRIORITY)):
        for cls in priority:
            available = cls.is_available()
            rows.append(BackendStatus(stage, cls.name, available,
                                      "" if available else cls.install_hint()))
    return rows


def default_font() -> Optional[str]:
    """Path of the TrueType font used when a watermark names none."""
    for name in DEFAULT_FONT_NAMES:
        path = find_system_font(name)
        if path is not None:
            return path
    return None


def print_diagnostics() -> str:
    """Return a human-readable diagnostics report."""
    from gifmark import __version__

    probes = probe_system()
    lines = [f"gifmark {__version__} backend diagnostics", "=" * 40,
             f"Platform: {platform.system()} {platform.release()}",
             f"Python:   {platform.python_version()}", "",
             "Libraries and tools:"]
    for key in ("pillow", "numpy", "pyyaml", "tqdm", "imagemagick"):
        p = probes[key]
        status = "FOUND" if p.found else "NOT FOUND"
        ver = f"  ({p.version})" if p.version else ""
        path = f"  [{p.path}]" if p.path else ""
        lines.append(f"  {p.name:20s} {status}{ver}{path}")
        if p.notes:
            lines.append(f"    {p.notes}")

    for stage in ("decode", "encode"):
        lines += ["", f"{stage.capitalize()} backends (priority order):"]
        for row in backend_status():
            if row.stage != stage:
                continue
            status = "available" if row.available else "unavailable"
            lines.append(f"  {row.name:20s} {status}")
            if row.hint:
                lines.append(f"    Install: {row.hint}")

    font = default_font()
    lines += ["", f"Default font: {font or 'Pillow built-in (no TrueType font found)'}"]
    return "\n".join(lines)
