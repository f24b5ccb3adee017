"""Synthetic data generators for calibration tests and demos."""

from imucal.sim.multi_position import MultiPositionLog, generate_multi_position_data

__all__ = ["MultiPositionLog", "generate_multi_position_data"]
