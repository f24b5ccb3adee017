"""
Nonlinear least squares solvers used by the calibration fits.

Available estimators:
    - Gauss-Newton
    - Levenberg-Marquardt
    - Numerical (central difference) Jacobian and its rank
"""

from imucal.estimators.nonlinear_least_squares import (
    gauss_newton,
    levenberg_marquardt,
    numerical_jacobian,
    jacobian_rank,
    solve_nonlinear_ls,
    NonlinearLSResult,
)

__all__ = [
    "gauss_newton",
    "levenberg_marquardt",
    "numerical_jacobian",
    "jacobian_rank",
    "solve_nonlinear_ls",
    "NonlinearLSResult",
]
