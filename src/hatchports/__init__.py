"""hatch-ports: deterministic per-workspace port blocks and dev server supervision."""

__version__ = "0.1.0"
