"""
Local gravity magnitude for multi-position accelerometer calibration.

The accelerometer fit forces every static reading to have the norm of local
gravity, so g_mag is a required CalibrationConfig setting. Use a measured
value when one exists; otherwise these helpers evaluate the WGS-84 normal
gravity at the site latitude. Between equator and poles g changes by about
0.5 %, which would otherwise show up directly as a scale error.

Altitude is not modelled (about -3.1e-6 m/s² per metre above sea level).
"""

from typing import Optional

import numpy as np


def gravity_magnitude_wgs84(lat_rad: float) -> float:
    """
    WGS-84 normal gravity at sea level.

        g(φ) = 9.7803 · (1 + 0.0053024·sin²φ − 0.000005·sin²2φ)

    Reference values: 9.780 m/s² at the equator, 9.806 m/s² at 45°,
    9.832 m/s² at the poles.

    Args:
        lat_rad: Geodetic latitude in radians, within [-π/2, π/2].

    Returns:
        g in m/s².

    Example:
        >>> g_45n = gravity_magnitude_wgs84(np.deg2rad(45.0))
        >>> print(f"{g_45n:.4f}")  # 9.8062
    """
    if not -np.pi / 2 - 1e-12 <= lat_rad <= np.pi / 2 + 1e-12:
        raise ValueError(f"lat_rad must be in [-pi/2, pi/2], got {lat_rad}")

    s1 = np.sin(lat_rad) ** 2
    s2 = np.sin(2.0 * lat_rad) ** 2

    return float(9.7803 * (1.0 + 0.0053024 * s1 - 0.000005 * s2))


def gravity_magnitude(
    lat_rad: Optional[float] = None,
    default_g: float = 9.81,
) -> float:
    """WGS-84 gravity at lat_rad, or default_g when the latitude is unknown."""
    if lat_rad is None:
        return default_g
    return gravity_magnitude_wgs84(lat_rad)


def gravity_magnitude_from_lat_deg(lat_deg: float) -> float:
    """
    gravity_magnitude_wgs84() taking the latitude in degrees.

    Example:
        >>> g_rome = gravity_magnitude_from_lat_deg(41.9)
        >>> print(f"Rome: {g_rome:.4f} m/s²")  # ~9.8034
    """
    return gravity_magnitude_wgs84(np.deg2rad(lat_deg))
