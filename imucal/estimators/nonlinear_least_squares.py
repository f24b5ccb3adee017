"""
Dense nonlinear least squares for the calibration fits.

The accelerometer fit (gravity norm) and the gyroscope fit (gravity
direction after integrated rotation) are both small problems of the form

    x̂ = argmin ½ Σᵢ wᵢ (yᵢ − hᵢ(x))²

with at most a dozen unknowns and a few thousand residuals, solved here
with one of two iterations on the normal equations A = JᵀWJ, g = JᵀW r:

    Gauss-Newton:         A · Δx = g
    Levenberg-Marquardt:  (A + μ·I) · Δx = g

LM adapts μ from the gain ratio ρ between achieved and predicted cost
reduction (Nielsen's rule): accepted steps shrink μ by
max(1/3, 1 − (2ρ − 1)³), rejected steps grow it by a doubling factor ν.

A run counts as converged when the step falls below tol relative to the
state, ‖Δx‖ < tol · (‖x‖ + tol), or when LM cannot reduce the cost any more
(damping overflow) after having taken at least one step. A stall at x0
counts only if the gradient JᵀW r is already below tol · (1 + ‖r‖).
Exhausting max_iter is reported as not converged. Steps leading to
non-finite parameters are never taken, and a non-finite Jacobian or
gradient stops the run unconverged: the result keeps the last finite x
together with its residuals and cost.

Convergence says nothing about identifiability; callers fitting models
that can be rank deficient check the Jacobian at the solution
(see jacobian_rank()).

The calibration residuals have no convenient closed-form derivatives, so
numerical_jacobian() provides central differences.
"""

from dataclasses import dataclass
from typing import Callable, Literal, Optional, Tuple

import numpy as np

_MAX_DAMPING = 1e16


@dataclass
class NonlinearLSResult:
    """Outcome of a nonlinear least squares run.

    Attributes:
        x: Final parameter vector.
        covariance: Parameter covariance σ²·(JᵀWJ)⁻¹ at x, or None.
        iterations: Outer iterations performed.
        residuals: y − h(x) at the final x.
        cost: ½ Σ wᵢ rᵢ² at the final x.
        initial_cost: Same cost at x0.
        converged: True if a convergence criterion was met.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    initial_cost: float
    converged: bool


def numerical_jacobian(
    f: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    epsilon: float = 1e-6,
) -> np.ndarray:
    """
    Central-difference Jacobian of f at x.

    Column i uses the step epsilon · max(1, |x_i|), so parameters of order one
    (scale factors) and small ones (misalignment, bias) get comparable
    relative accuracy.

    Args:
        f: Vector function R^n → R^m.
        x: Evaluation point, shape (n,).
        epsilon: Relative step.

    Returns:
        Jacobian ∂f/∂x, shape (m, n).

    Example:
        >>> f = lambda x: np.array([x[0] ** 2, x[0] * x[1]])
        >>> J = numerical_jacobian(f, np.array([1.0, 2.0]))
        >>> print(np.round(J, 6))  # [[2, 0], [2, 1]]
    """
    x = np.asarray(x, dtype=float)
    n_out = len(np.asarray(f(x)))

    J = np.empty((n_out, len(x)))
    for i in range(len(x)):
        step = epsilon * max(1.0, abs(x[i]))
        offset = np.zeros_like(x)
        offset[i] = step
        J[:, i] = (np.asarray(f(x + offset)) - np.asarray(f(x - offset))) / (2.0 * step)

    return J


def jacobian_rank(J: np.ndarray, rtol: float = 1e-6) -> int:
    """
    Numerical rank of a Jacobian.

    Singular values below rtol · σ_max count as zero. The default leaves
    room for the truncation and rounding error of numerical_jacobian(),
    which would make an exactly singular problem look full rank under the
    machine-precision threshold of np.linalg.matrix_rank.

    Args:
        J: Jacobian, shape (m, n).
        rtol: Relative singular value threshold.

    Returns:
        Rank in [0, min(m, n)].
    """
    J = np.asarray(J, dtype=float)
    if J.ndim != 2:
        raise ValueError(f"J must be 2D array, got shape {J.shape}")
    if J.size == 0 or not np.all(np.isfinite(J)):
        return 0

    sv = np.linalg.svd(J, compute_uv=False)
    if sv[0] == 0.0:
        return 0
    return int(np.sum(sv > rtol * sv[0]))


def _solve_linear(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.solve(A, b)
    except np.linalg.LinAlgError:
        return np.linalg.lstsq(A, b, rcond=None)[0]


def _weight_vector(weights: Optional[np.ndarray], m: int) -> np.ndarray:
    if weights is None:
        return np.ones(m)
    w = np.asarray(weights, dtype=float)
    if w.ndim != 1 or len(w) != m:
        raise ValueError(f"weights must be 1D array of length {m}")
    if np.any(w < 0):
        raise ValueError("weights must be non-negative")
    return w


def _run(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray],
    method: str,
    max_iter: int,
    tol: float,
    mu0: float = 1e-3,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """Shared iteration loop of gauss_newton() and levenberg_marquardt()."""
    if method not in ("gn", "lm"):
        raise ValueError(f"Unknown method: {method}. Use 'gn' or 'lm'.")

    y = np.asarray(y, dtype=float)
    x = np.array(x0, dtype=float)
    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x.shape}")
    if max_iter < 1:
        raise ValueError(f"max_iter must be positive, got {max_iter}")

    m, n = len(y), len(x)
    w = _weight_vector(weights, m)

    def residual_and_cost(x_eval: np.ndarray) -> Tuple[np.ndarray, float]:
        predicted = np.asarray(h(x_eval), dtype=float)
        if len(predicted) != m:
            raise ValueError(f"h(x) returned {len(predicted)} elements, expected {m}")
        res = y - predicted
        return res, 0.5 * float(res @ (w * res))

    def normal_equations(x_eval: np.ndarray, res: np.ndarray):
        J = np.asarray(jacobian(x_eval), dtype=float)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")
        JtW = J.T * w
        return JtW @ J, JtW @ res

    r, cost = residual_and_cost(x)
    initial_cost = cost

    mu, nu = mu0, 2.0
    converged = False
    n_accepted = 0
    n_iter = 0

    while n_iter < max_iter:
        n_iter += 1
        A, g = normal_equations(x, r)
        if not (np.all(np.isfinite(A)) and np.all(np.isfinite(g))):
            break

        if method == "gn":
            dx = _solve_linear(A, g)
            x_next = x + dx
            if not np.all(np.isfinite(x_next)):
                break
            x = x_next
            r, cost = residual_and_cost(x)
            n_accepted += 1
        else:
            # Inner loop: raise damping until the cost drops
            accepted = False
            while mu <= _MAX_DAMPING:
                dx = _solve_linear(A + mu * np.eye(n), g)
                x_try = x + dx
                if not np.all(np.isfinite(x_try)):
                    mu *= nu
                    nu *= 2.0
                    continue
                r_try, cost_try = residual_and_cost(x_try)

                expected_gain = 0.5 * dx @ (mu * dx + g)
                rho = 0.0
                if expected_gain > 0 and np.isfinite(cost_try):
                    rho = (cost - cost_try) / expected_gain

                if rho > 0:
                    x, r, cost = x_try, r_try, cost_try
                    mu *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                    nu = 2.0
                    accepted = True
                    n_accepted += 1
                    break

                mu *= nu
                nu *= 2.0

            if not accepted:
                # A stall before any accepted step only counts at a stationary point
                converged = n_accepted > 0 or bool(
                    np.linalg.norm(g) <= tol * (1.0 + np.linalg.norm(r))
                )
                break

        if np.linalg.norm(dx) < tol * (np.linalg.norm(x) + tol):
            converged = True
            break

    covariance = None
    if return_covariance:
        A, _ = normal_equations(x, r)
        dof = m - n
        sigma2 = float(r @ (w * r)) / dof if dof > 0 else 1.0
        try:
            covariance = sigma2 * np.linalg.inv(A)
        except np.linalg.LinAlgError:
            covariance = sigma2 * np.linalg.pinv(A)

    return NonlinearLSResult(
        x=x,
        covariance=covariance,
        iterations=n_iter,
        residuals=r,
        cost=float(cost),
        initial_cost=float(initial_cost),
        converged=converged,
    )


def gauss_newton(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 20,
    tol: float = 1e-8,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Undamped Gauss-Newton iteration.

    Fast when x0 is already close to the solution; may diverge otherwise.

    Args:
        h: Model h(x), R^n → R^m.
        jacobian: ∂h/∂x at x, shape (m, n).
        y: Observations, shape (m,).
        x0: Starting point, shape (n,).
        weights: Optional per-residual weights, shape (m,).
        max_iter: Iteration cap.
        tol: Relative step tolerance.
        return_covariance: Whether to fill NonlinearLSResult.covariance.

    Returns:
        NonlinearLSResult.

    Example:
        >>> t = np.linspace(0.0, 1.0, 20)
        >>> h = lambda x: x[0] * np.exp(-x[1] * t)
        >>> jac = lambda x: np.column_stack([np.exp(-x[1] * t), -x[0] * t * np.exp(-x[1] * t)])
        >>> result = gauss_newton(h, jac, h(np.array([2.0, 0.5])), x0=np.array([1.8, 0.4]))
        >>> print(result.x)  # [2, 0.5]
    """
    return _run(
        h, jacobian, y, x0, weights,
        method="gn",
        max_iter=max_iter,
        tol=tol,
        return_covariance=return_covariance,
    )


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 50,
    tol: float = 1e-8,
    mu0: float = 1e-3,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Damped (Levenberg-Marquardt) iteration.

    Only steps that lower the cost are taken; the damping μ moves the step
    between the Gauss-Newton direction (μ → 0) and a short gradient step
    (μ large). Used for both calibration fits.

    Args:
        h: Model h(x), R^n → R^m.
        jacobian: ∂h/∂x at x, shape (m, n).
        y: Observations, shape (m,).
        x0: Starting point, shape (n,).
        weights: Optional per-residual weights, shape (m,).
        max_iter: Iteration cap (accepted steps).
        tol: Relative step tolerance.
        mu0: Starting damping.
        return_covariance: Whether to fill NonlinearLSResult.covariance.

    Returns:
        NonlinearLSResult.
    """
    return _run(
        h, jacobian, y, x0, weights,
        method="lm",
        max_iter=max_iter,
        tol=tol,
        mu0=mu0,
        return_covariance=return_covariance,
    )


def solve_nonlinear_ls(
    h: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    jacobian: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    weights: Optional[np.ndarray] = None,
    method: Literal["gn", "lm"] = "lm",
    max_iter: int = 50,
    tol: float = 1e-8,
    return_covariance: bool = True,
    epsilon: float = 1e-6,
    mu0: float = 1e-3,
) -> NonlinearLSResult:
    """
    Solve with GN or LM, differentiating h numerically if needed.

    Args:
        h: Model h(x).
        y: Observations, shape (m,).
        x0: Starting point, shape (n,).
        jacobian: Optional analytic Jacobian; numerical_jacobian(h, x,
                  epsilon) when None.
        weights: Optional per-residual weights.
        method: "gn" or "lm".
        max_iter: Iteration cap.
        tol: Relative step tolerance.
        return_covariance: Whether to compute the covariance.
        epsilon: Relative finite-difference step.
        mu0: Starting LM damping.

    Returns:
        NonlinearLSResult.
    """
    if method not in ("gn", "lm"):
        raise ValueError(f"Unknown method: {method}. Use 'gn' or 'lm'.")

    if jacobian is None:
        def jacobian(x):
            return numerical_jacobian(h, x, epsilon=epsilon)

    if method == "gn":
        return gauss_newton(h, jacobian, y, x0, weights, max_iter, tol, return_covariance)
    return levenberg_marquardt(h, jacobian, y, x0, weights, max_iter, tol, mu0, return_covariance)
