"""httpprobe — HTTP(S) endpoint probe with per-phase timing."""

__version__ = "0.1.0"
