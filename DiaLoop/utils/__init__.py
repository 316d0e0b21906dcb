"""Utility module for the DiaLoop library.

Key Contents:
    - `config.py`: Loading and dot-path access of YAML or JSON preference
      documents (`ConfigManager`, `load_config`, `get_config_value`).
    - `numeric.py`: Clamping, smoothstep, interpolation, sigmoid and
      half-life helpers shared by the dosing and learning code.
"""

# from .config import ConfigManager, load_config, get_config_value
