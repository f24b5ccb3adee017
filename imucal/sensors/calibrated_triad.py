"""
Calibrated triad model: misalignment, scale and bias of a 3-axis sensor.

A raw triad reading X (accelerometer or gyroscope) is mapped to the
calibrated reading X' by

    X' = T @ K @ (X - B)

with the misalignment matrix T, the diagonal scale matrix K and the bias B:

        [    1     -mis_yz   mis_zy ]        [ s_x   0    0  ]        [ b_x ]
    T = [  mis_xz     1     -mis_zx ]    K = [  0   s_y   0  ]    B = [ b_y ]
        [ -mis_xy   mis_yx     1    ]        [  0    0   s_z ]        [ b_z ]

For the "body frame" special case (used for accelerometers, whose axes define
the body frame) mis_xz = mis_xy = mis_yx = 0 and T is upper triangular.

Without the bias (e.g. before it is known) the normalized reading is simply
X'' = T @ K @ X.

CalibratedTriad instances are immutable. T, K and their product M = T @ K are
derived once at construction, so M always matches the 12 shape parameters.
Changing a parameter means building a new instance (with_scale, with_bias,
with_params).

References:
    D. Tedaldi, A. Pretto, E. Menegatti, "A Robust and Easy to Implement
    Method for IMU Calibration without External Equipments", ICRA 2014.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np

from imucal.sensors.types import TriadSample, check_dtype

logger = logging.getLogger(__name__)

PARAM_NAMES = (
    "mis_yz", "mis_zy", "mis_zx",
    "mis_xz", "mis_xy", "mis_yx",
    "s_x", "s_y", "s_z",
    "b_x", "b_y", "b_z",
)

# 9 (misalignment) + 9 (scale) + 3 (bias)
_FILE_NUM_VALUES = 21
_FILE_ATOL = 1e-9


class CalibrationFileError(ValueError):
    """Raised when a calibration file cannot be read or is malformed."""


def _readonly(a: np.ndarray) -> np.ndarray:
    a.flags.writeable = False
    return a


class CalibratedTriad:
    """
    Affine calibration model T·K·(X − B) of a 3-axis sensor.

    Args:
        mis_yz, mis_zy, mis_zx, mis_xz, mis_xy, mis_yx: Misalignment terms
            (off-diagonal entries of T, diagonal fixed at 1). Default 0.
        s_x, s_y, s_z: Per-axis scale factors (diagonal of K). Default 1.
        b_x, b_y, b_z: Bias components. Default 0.
        dtype: Floating precision, np.float64 (default) or np.float32.

    Example:
        >>> calib = CalibratedTriad(s_x=1.01, s_y=0.99, s_z=1.0, b_z=0.05)
        >>> acc = calib.unbias_normalize(np.array([0.0, 0.0, 9.86]))
        >>> print(acc)  # [0, 0, 9.81]
    """

    __slots__ = ("_params", "_dtype", "_mis_mat", "_scale_mat", "_bias_vec", "_ms_mat")

    def __init__(
        self,
        mis_yz: float = 0.0,
        mis_zy: float = 0.0,
        mis_zx: float = 0.0,
        mis_xz: float = 0.0,
        mis_xy: float = 0.0,
        mis_yx: float = 0.0,
        s_x: float = 1.0,
        s_y: float = 1.0,
        s_z: float = 1.0,
        b_x: float = 0.0,
        b_y: float = 0.0,
        b_z: float = 0.0,
        dtype=np.float64,
    ) -> None:
        self._dtype = check_dtype(dtype)
        params = np.array(
            [mis_yz, mis_zy, mis_zx, mis_xz, mis_xy, mis_yx,
             s_x, s_y, s_z, b_x, b_y, b_z],
            dtype=self._dtype,
        )
        self._params = _readonly(params)

        one = self._dtype.type(1)
        self._mis_mat = _readonly(np.array(
            [
                [one, -mis_yz, mis_zy],
                [mis_xz, one, -mis_zx],
                [-mis_xy, mis_yx, one],
            ],
            dtype=self._dtype,
        ))
        self._scale_mat = _readonly(np.diag(params[6:9]).astype(self._dtype))
        self._bias_vec = _readonly(params[9:12].copy())
        self._ms_mat = _readonly(self._mis_mat @ self._scale_mat)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_params(cls, params: np.ndarray, dtype=np.float64) -> "CalibratedTriad":
        """Build from a 12-vector ordered as PARAM_NAMES."""
        params = np.asarray(params, dtype=np.float64)
        if params.shape != (12,):
            raise ValueError(f"params must have shape (12,), got {params.shape}")
        return cls(*params.tolist(), dtype=dtype)

    @classmethod
    def from_matrices(
        cls,
        mis_mat: np.ndarray,
        scale_mat: np.ndarray,
        bias_vec: np.ndarray,
        dtype=np.float64,
        atol: float = _FILE_ATOL,
    ) -> "CalibratedTriad":
        """
        Build from explicit T, K and B.

        Raises:
            ValueError: If T does not have a unit diagonal or K has non-zero
                        off-diagonal entries (beyond atol).
        """
        mis_mat = np.asarray(mis_mat, dtype=np.float64)
        scale_mat = np.asarray(scale_mat, dtype=np.float64)
        bias_vec = np.asarray(bias_vec, dtype=np.float64).reshape(-1)

        if mis_mat.shape != (3, 3):
            raise ValueError(f"misalignment matrix must be (3, 3), got {mis_mat.shape}")
        if scale_mat.shape != (3, 3):
            raise ValueError(f"scale matrix must be (3, 3), got {scale_mat.shape}")
        if bias_vec.shape != (3,):
            raise ValueError(f"bias vector must have 3 elements, got {bias_vec.shape}")
        if not np.allclose(np.diag(mis_mat), 1.0, rtol=0.0, atol=atol):
            raise ValueError(
                f"misalignment matrix diagonal must be 1, got {np.diag(mis_mat)}"
            )
        off_diag = scale_mat - np.diag(np.diag(scale_mat))
        if not np.allclose(off_diag, 0.0, rtol=0.0, atol=atol):
            raise ValueError("scale matrix must be diagonal")

        return cls(
            mis_yz=-mis_mat[0, 1], mis_zy=mis_mat[0, 2], mis_zx=-mis_mat[1, 2],
            mis_xz=mis_mat[1, 0], mis_xy=-mis_mat[2, 0], mis_yx=mis_mat[2, 1],
            s_x=scale_mat[0, 0], s_y=scale_mat[1, 1], s_z=scale_mat[2, 2],
            b_x=bias_vec[0], b_y=bias_vec[1], b_z=bias_vec[2],
            dtype=dtype,
        )

    def with_params(self, **kwargs) -> "CalibratedTriad":
        """Return a copy with the named parameters replaced."""
        unknown = set(kwargs) - set(PARAM_NAMES)
        if unknown:
            raise ValueError(f"Unknown calibration parameters: {sorted(unknown)}")
        values = dict(zip(PARAM_NAMES, self._params.tolist()))
        values.update(kwargs)
        return CalibratedTriad(**values, dtype=self._dtype)

    def with_scale(self, s_vec: np.ndarray) -> "CalibratedTriad":
        s_vec = np.asarray(s_vec, dtype=np.float64).reshape(-1)
        if s_vec.shape != (3,):
            raise ValueError(f"scale vector must have 3 elements, got {s_vec.shape}")
        return self.with_params(s_x=s_vec[0], s_y=s_vec[1], s_z=s_vec[2])

    def with_bias(self, b_vec: np.ndarray) -> "CalibratedTriad":
        b_vec = np.asarray(b_vec, dtype=np.float64).reshape(-1)
        if b_vec.shape != (3,):
            raise ValueError(f"bias vector must have 3 elements, got {b_vec.shape}")
        return self.with_params(b_x=b_vec[0], b_y=b_vec[1], b_z=b_vec[2])

    def astype(self, dtype) -> "CalibratedTriad":
        return CalibratedTriad.from_params(self._params, dtype=dtype)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def params(self) -> np.ndarray:
        """All 12 parameters, ordered as PARAM_NAMES."""
        return self._params

    mis_yz = property(lambda self: float(self._params[0]))
    mis_zy = property(lambda self: float(self._params[1]))
    mis_zx = property(lambda self: float(self._params[2]))
    mis_xz = property(lambda self: float(self._params[3]))
    mis_xy = property(lambda self: float(self._params[4]))
    mis_yx = property(lambda self: float(self._params[5]))
    s_x = property(lambda self: float(self._params[6]))
    s_y = property(lambda self: float(self._params[7]))
    s_z = property(lambda self: float(self._params[8]))
    b_x = property(lambda self: float(self._params[9]))
    b_y = property(lambda self: float(self._params[10]))
    b_z = property(lambda self: float(self._params[11]))

    @property
    def misalignment_matrix(self) -> np.ndarray:
        """T, shape (3, 3)."""
        return self._mis_mat

    @property
    def scale_matrix(self) -> np.ndarray:
        """K, shape (3, 3), diagonal."""
        return self._scale_mat

    @property
    def scale_vector(self) -> np.ndarray:
        return self._params[6:9]

    @property
    def bias_vector(self) -> np.ndarray:
        """B, shape (3,)."""
        return self._bias_vec

    @property
    def ms_matrix(self) -> np.ndarray:
        """M = T @ K, shape (3, 3)."""
        return self._ms_mat

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def _apply(self, raw, fn):
        if isinstance(raw, TriadSample):
            return raw.with_data(fn(raw.data.astype(self._dtype)))

        raw = np.asarray(raw)
        if raw.dtype.type not in (np.float32, np.float64):
            raw = raw.astype(self._dtype)
        if raw.shape == (3,):
            return fn(raw)
        if raw.ndim == 2 and raw.shape[1] == 3:
            return fn(raw.T).T
        raise ValueError(f"raw data must have shape (3,) or (N, 3), got {raw.shape}")

    def normalize(self, raw: Union[np.ndarray, TriadSample]):
        """
        Apply misalignment and scale only: M @ raw.

        Accepts a (3,) vector, an (N, 3) array or a TriadSample (timestamp and
        interval id are preserved).
        """
        return self._apply(raw, lambda x: self._ms_mat @ x)

    def unbias_normalize(self, raw: Union[np.ndarray, TriadSample]):
        """
        Full calibration: M @ (raw - B).

        Accepts a (3,) vector, an (N, 3) array or a TriadSample.
        """
        if isinstance(raw, TriadSample) or np.ndim(raw) == 1:
            return self._apply(raw, lambda x: self._ms_mat @ (x - self._bias_vec))
        return self._apply(
            raw, lambda x: self._ms_mat @ (x - self._bias_vec[:, None])
        )

    def unbias(self, raw: Union[np.ndarray, TriadSample]):
        """
        Remove the bias only: raw - B.

        Accepts a (3,) vector, an (N, 3) array or a TriadSample.
        """
        if isinstance(raw, TriadSample) or np.ndim(raw) == 1:
            return self._apply(raw, lambda x: x - self._bias_vec)
        return self._apply(raw, lambda x: x - self._bias_vec[:, None])

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Union[str, Path]) -> bool:
        """
        Write T, K and B to a plain text file.

        Layout (whitespace separated, no header):
            T rows (3 lines), blank line, K rows (3 lines), blank line,
            B (3 lines, one value each).

        Returns:
            True on success, False if the file cannot be written.
        """
        path = Path(path)
        try:
            with open(path, "w", encoding="utf-8") as f:
                np.savetxt(f, self._mis_mat.astype(np.float64), fmt="%.17g")
                f.write("\n")
                np.savetxt(f, self._scale_mat.astype(np.float64), fmt="%.17g")
                f.write("\n")
                np.savetxt(f, self._bias_vec.astype(np.float64).reshape(3, 1), fmt="%.17g")
        except OSError as e:
            logger.warning("Calibration save failed %s: %s", path, e)
            return False
        return True

    @classmethod
    def from_file(cls, path: Union[str, Path], dtype=np.float64) -> "CalibratedTriad":
        """
        Read a calibration written by save().

        Raises:
            CalibrationFileError: If the file cannot be read, does not hold
                exactly 21 numbers, or the matrices do not fit the model.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise CalibrationFileError(f"Cannot read calibration file {path}: {e}") from e

        tokens = text.split()
        if len(tokens) != _FILE_NUM_VALUES:
            raise CalibrationFileError(
                f"Calibration file {path} must contain {_FILE_NUM_VALUES} numbers, "
                f"found {len(tokens)}"
            )
        try:
            values = np.array([float(tok) for tok in tokens])
        except ValueError as e:
            raise CalibrationFileError(f"Non-numeric value in {path}: {e}") from e
        if not np.all(np.isfinite(values)):
            raise CalibrationFileError(f"Non-finite value in {path}")

        try:
            return cls.from_matrices(
                values[0:9].reshape(3, 3),
                values[9:18].reshape(3, 3),
                values[18:21],
                dtype=dtype,
            )
        except ValueError as e:
            raise CalibrationFileError(f"Invalid calibration in {path}: {e}") from e

    @classmethod
    def load(cls, path: Union[str, Path], dtype=np.float64) -> Optional["CalibratedTriad"]:
        """Read a calibration file; returns None (and logs why) on failure."""
        try:
            return cls.from_file(path, dtype=dtype)
        except CalibrationFileError as e:
            logger.warning("Calibration load failed: %s", e)
            return None

    # ------------------------------------------------------------------
    # Comparison / formatting
    # ------------------------------------------------------------------

    def allclose(self, other: "CalibratedTriad", atol: float = 1e-8) -> bool:
        """True if all 12 parameters match other within atol."""
        return bool(np.allclose(
            self._params.astype(np.float64),
            other.params.astype(np.float64),
            rtol=0.0,
            atol=atol,
        ))

    def __str__(self) -> str:
        with np.printoptions(precision=6, suppress=True):
            return "\n".join([
                "Misalignment Matrix",
                str(self._mis_mat),
                "Scale Matrix",
                str(self._scale_mat),
                "Bias Vector",
                str(self._bias_vec.reshape(3, 1)),
            ])

    def __repr__(self) -> str:
        args = ", ".join(
            f"{name}={value!r}" for name, value in zip(PARAM_NAMES, self._params.tolist())
        )
        return f"CalibratedTriad({args}, dtype={self._dtype.name})"
