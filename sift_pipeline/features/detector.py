#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Scale-space SIFT detector and descriptor.

The filter walks a gaussian scale space one octave at a time. After each
octave step the caller can detect keypoints, compute their dominant
orientations and compute a 128-dimensional descriptor for every
(keypoint, orientation) pair. Octave ``o`` is sampled with a step of
``2**o`` input pixels; levels ``s_min .. s_max`` of an octave have
smoothing ``sigma0 * 2**(s / levels)`` in octave pixels.
"""
import math
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np
from scipy import ndimage

from sift_pipeline.core.config import SIFT_CONFIG
from sift_pipeline.core.logging_config import get_module_logger
from sift_pipeline.utils.utils import timer

logger = get_module_logger(__name__)

# nominal smoothing of the input image
SIFT_NOMINAL_SIGMA = 0.5

# number of bins of the orientation histogram
SIFT_ORI_HIST_BINS = 36

# orientation window sigma, relative to the keypoint scale
SIFT_ORI_SIG_FCTR = 1.5

# orientation peaks above this fraction of the maximum become orientations
SIFT_ORI_PEAK_RATIO = 0.8

# at most this many orientations per keypoint
SIFT_MAX_ORIENTATIONS = 4

# descriptor: spatial bins per side, orientation bins, bin size magnification
SIFT_DESCR_WIDTH = 4
SIFT_DESCR_HIST_BINS = 8
SIFT_DESCR_SCL_FCTR = 3.0

# threshold on magnitude of elements of descriptor vector
SIFT_DESCR_MAG_THR = 0.2

# quadratic refinement: relocation budget and offset triggering a move
SIFT_REFINE_ITERATIONS = 5
SIFT_REFINE_STEP = 0.6


class OctaveExhausted(Exception):
    """Raised when no further octave can be computed."""


@dataclass(frozen=True)
class Keypoint:
    """
    A scale-space keypoint.

    ``x``, ``y`` and ``sigma`` are expressed in input image pixels; the
    remaining fields locate the keypoint on the octave grid.
    """
    x: float
    y: float
    sigma: float
    octave: int = 0
    ix: int = 0
    iy: int = 0
    level: int = 0
    s: float = 0.0


class ScaleSpaceDetector(Protocol):
    """Interface the image pipeline needs from a detector."""

    levels: int

    def process_first_octave(self, data: np.ndarray) -> None: ...

    def process_next_octave(self) -> None: ...

    def detect(self) -> List[Keypoint]: ...

    def calc_keypoint_orientations(self, keypoint: Keypoint) -> List[float]: ...

    def calc_keypoint_descriptor(self, keypoint: Keypoint, angle: float) -> np.ndarray: ...

    def keypoint_from_frame(self, x: float, y: float, sigma: float) -> Keypoint: ...

    def get_octave(self, level: int) -> np.ndarray: ...

    @property
    def octave_index(self) -> int: ...

    @property
    def octave_width(self) -> int: ...

    @property
    def octave_height(self) -> int: ...


def _smooth(image: np.ndarray, sigma: float) -> np.ndarray:
    return ndimage.gaussian_filter(image, sigma, mode="nearest").astype(np.float32)


class SiftFilter:
    """
    Octave-by-octave SIFT filter.

    Parameters
    ----------
    width, height : int
        Size of the input image.
    octaves : int, optional
        Number of octaves; -1 uses as many as the image size allows.
    levels : int, optional
        Number of levels per octave, at least 1.
    first_octave : int, optional
        Index of the first octave; -1 doubles the input resolution.
    peak_thresh : float, optional
        Minimum absolute DoG value of a keypoint.
    edge_thresh : float, optional
        Maximum ratio of principal curvatures; 0 disables the test.
    """

    def __init__(self, width: int, height: int,
                 octaves: int = SIFT_CONFIG["octaves"],
                 levels: int = SIFT_CONFIG["levels"],
                 first_octave: int = SIFT_CONFIG["first_octave"],
                 peak_thresh: float = 0.0,
                 edge_thresh: float = 10.0):
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid image size {width}x{height}")
        if levels < 1:
            raise ValueError(f"At least one level per octave is required, got {levels}")
        if octaves < 0:
            octaves = max(int(math.floor(math.log2(min(width, height)))) - first_octave - 3, 1)

        self.width = width
        self.height = height
        self.num_octaves = octaves
        self.levels = levels
        self.first_octave = first_octave
        self.peak_thresh = peak_thresh
        self.edge_thresh = edge_thresh

        self.s_min = -1
        self.s_max = levels + 1
        self.sigmak = 2.0 ** (1.0 / levels)
        self.sigma0 = 1.6 * self.sigmak
        self.dsigma0 = self.sigma0 * math.sqrt(1.0 - 1.0 / (self.sigmak ** 2))

        self._octave_index = first_octave
        self._octave: Optional[np.ndarray] = None
        self._gradients = {}
        self.keypoints: List[Keypoint] = []

    # ------------------------------------------------------------------
    # octave state

    @property
    def octave_index(self) -> int:
        return self._octave_index

    @property
    def octave_width(self) -> int:
        return 0 if self._octave is None else self._octave.shape[2]

    @property
    def octave_height(self) -> int:
        return 0 if self._octave is None else self._octave.shape[1]

    def get_octave(self, level: int) -> np.ndarray:
        """Return the gaussian plane of ``level`` in the current octave."""
        if self._octave is None:
            raise RuntimeError("No octave has been processed yet")
        if not self.s_min <= level <= self.s_max:
            raise IndexError(f"Level {level} outside [{self.s_min}, {self.s_max}]")
        return self._octave[level - self.s_min]

    def _build_octave(self, base: np.ndarray) -> None:
        planes = [base]
        for s in range(self.s_min + 1, self.s_max + 1):
            planes.append(_smooth(planes[-1], self.dsigma0 * self.sigmak ** s))
        self._octave = np.stack(planes)
        self._gradients = {}
        self.keypoints = []

    def process_first_octave(self, data: np.ndarray) -> None:
        """
        Compute the first octave from the input samples.

        Raises
        ------
        OctaveExhausted
            If no octave is requested or the first octave would be empty.
        """
        self._octave = None
        self._octave_index = self.first_octave
        o = self.first_octave
        if self.num_octaves == 0:
            raise OctaveExhausted("No octaves requested")

        if o >= 0:
            width, height = self.width >> o, self.height >> o
        else:
            width, height = self.width << -o, self.height << -o
        if width < 1 or height < 1:
            raise OctaveExhausted(f"Image too small for first octave {o}")

        image = np.asarray(data, dtype=np.float32).reshape(self.height, self.width)
        if o < 0:
            base = image
            for _ in range(-o):
                base = cv2.resize(base, (base.shape[1] * 2, base.shape[0] * 2),
                                  interpolation=cv2.INTER_LINEAR)
        else:
            step = 1 << o
            base = np.ascontiguousarray(image[::step, ::step][:height, :width])

        sa = self.sigma0 * self.sigmak ** self.s_min
        sb = SIFT_NOMINAL_SIGMA * 2.0 ** (-o)
        if sa > sb:
            base = _smooth(base, math.sqrt(sa * sa - sb * sb))
        self._build_octave(base)
        logger.debug(f"Octave {o}: {self.octave_width}x{self.octave_height}")

    def process_next_octave(self) -> None:
        """
        Compute the next octave from the current one.

        Raises
        ------
        OctaveExhausted
            When the last requested octave has been processed or the next
            octave would be empty.
        """
        if self._octave is None:
            raise OctaveExhausted("No current octave")
        if self._octave_index >= self.first_octave + self.num_octaves - 1:
            raise OctaveExhausted("Last octave reached")

        s_best = min(self.s_min + self.levels, self.s_max)
        previous = self.get_octave(s_best)
        height, width = previous.shape[0] // 2, previous.shape[1] // 2
        if width < 1 or height < 1:
            raise OctaveExhausted("Octave too small")
        base = np.ascontiguousarray(previous[:2 * height:2, :2 * width:2])

        sa = self.sigma0 * self.sigmak ** self.s_min
        sb = self.sigma0 * self.sigmak ** (s_best - self.levels)
        if sa > sb:
            base = _smooth(base, math.sqrt(sa * sa - sb * sb))
        self._octave_index += 1
        self._build_octave(base)
        logger.debug(f"Octave {self._octave_index}: {self.octave_width}x{self.octave_height}")

    # ------------------------------------------------------------------
    # detection

    @timer
    def detect(self) -> List[Keypoint]:
        """
        Detect keypoints in the current octave.

        Returns
        -------
        list of Keypoint
            Keypoints in scan order (level, row, column).
        """
        self.keypoints = []
        if self._octave is None:
            return []
        dog = self._octave[1:] - self._octave[:-1]
        n_levels, height, width = dog.shape
        if n_levels < 3 or height < 3 or width < 3:
            return []

        footprint = np.ones((3, 3, 3), dtype=bool)
        footprint[1, 1, 1] = False
        neigh_max = ndimage.maximum_filter(dog, footprint=footprint, mode="nearest")
        neigh_min = ndimage.minimum_filter(dog, footprint=footprint, mode="nearest")

        tp = 0.8 * self.peak_thresh
        candidates = ((dog > neigh_max) & (dog >= tp)) | ((dog < neigh_min) & (dog <= -tp))
        candidates[0] = candidates[-1] = False
        candidates[:, 0, :] = candidates[:, -1, :] = False
        candidates[:, :, 0] = candidates[:, :, -1] = False

        for d, y, x in zip(*np.nonzero(candidates)):
            keypoint = self._refine(dog, int(d), int(y), int(x))
            if keypoint is not None:
                self.keypoints.append(keypoint)
        return list(self.keypoints)

    def _refine(self, dog: np.ndarray, d: int, y: int, x: int) -> Optional[Keypoint]:
        _, height, width = dog.shape
        b = np.zeros(3)
        for _ in range(SIFT_REFINE_ITERATIONS):
            c = dog[d, y, x]
            Dx = 0.5 * (dog[d, y, x + 1] - dog[d, y, x - 1])
            Dy = 0.5 * (dog[d, y + 1, x] - dog[d, y - 1, x])
            Ds = 0.5 * (dog[d + 1, y, x] - dog[d - 1, y, x])
            Dxx = dog[d, y, x + 1] + dog[d, y, x - 1] - 2.0 * c
            Dyy = dog[d, y + 1, x] + dog[d, y - 1, x] - 2.0 * c
            Dss = dog[d + 1, y, x] + dog[d - 1, y, x] - 2.0 * c
            Dxy = 0.25 * (dog[d, y + 1, x + 1] + dog[d, y - 1, x - 1]
                          - dog[d, y - 1, x + 1] - dog[d, y + 1, x - 1])
            Dxs = 0.25 * (dog[d + 1, y, x + 1] + dog[d - 1, y, x - 1]
                          - dog[d - 1, y, x + 1] - dog[d + 1, y, x - 1])
            Dys = 0.25 * (dog[d + 1, y + 1, x] + dog[d - 1, y - 1, x]
                          - dog[d - 1, y + 1, x] - dog[d + 1, y - 1, x])

            hessian = np.array([[Dxx, Dxy, Dxs],
                                [Dxy, Dyy, Dys],
                                [Dxs, Dys, Dss]], dtype=np.float64)
            gradient = np.array([Dx, Dy, Ds], dtype=np.float64)
            try:
                b = -np.linalg.solve(hessian, gradient)
            except np.linalg.LinAlgError:
                b = np.zeros(3)
            if not np.all(np.isfinite(b)):
                b = np.zeros(3)

            dx = 1 if (b[0] > SIFT_REFINE_STEP and x < width - 2) else \
                -1 if (b[0] < -SIFT_REFINE_STEP and x > 1) else 0
            dy = 1 if (b[1] > SIFT_REFINE_STEP and y < height - 2) else \
                -1 if (b[1] < -SIFT_REFINE_STEP and y > 1) else 0
            if dx == 0 and dy == 0:
                break
            x += dx
            y += dy

        value = c + 0.5 * (Dx * b[0] + Dy * b[1] + Ds * b[2])
        det = Dxx * Dyy - Dxy * Dxy
        if det <= 0:
            return None
        score = (Dxx + Dyy) ** 2 / det
        te = self.edge_thresh
        edge_limit = math.inf if te <= 0 else (te + 1.0) ** 2 / te

        level = self.s_min + d
        xn, yn, sn = x + b[0], y + b[1], level + b[2]
        good = (abs(value) > self.peak_thresh
                and score < edge_limit
                and np.all(np.abs(b) < 1.5)
                and 0 <= xn <= width - 1
                and 0 <= yn <= height - 1
                and self.s_min <= sn <= self.s_max)
        if not good:
            return None

        xper = 2.0 ** self._octave_index
        return Keypoint(
            x=float(xn * xper),
            y=float(yn * xper),
            sigma=float(self.sigma0 * 2.0 ** (sn / self.levels) * xper),
            octave=self._octave_index,
            ix=x,
            iy=y,
            level=level,
            s=float(sn),
        )

    def keypoint_from_frame(self, x: float, y: float, sigma: float) -> Keypoint:
        """
        Place a frame given in image coordinates on the octave grid.

        Parameters
        ----------
        x, y : float
            Frame center in input image pixels.
        sigma : float
            Frame scale, strictly positive.
        """
        if sigma <= 0:
            raise ValueError(f"Frame scale must be positive, got {sigma}")
        phi = math.log2(sigma / self.sigma0)
        o = int(math.floor(phi - (self.s_min + 0.5) / self.levels))
        o = min(o, self.first_octave + self.num_octaves - 1)
        o = max(o, self.first_octave)
        s = self.levels * (phi - o)
        level = int(s + 0.5)
        level = max(min(level, self.s_max - 2), self.s_min + 1)
        xper = 2.0 ** o
        return Keypoint(
            x=float(x), y=float(y), sigma=float(sigma), octave=o,
            ix=int(x / xper + 0.5), iy=int(y / xper + 0.5), level=level, s=float(s),
        )

    # ------------------------------------------------------------------
    # orientations and descriptors

    def _gradient(self, level: int) -> Tuple[np.ndarray, np.ndarray]:
        """Gradient modulus and angle in [0, 2*pi) of a level, cached per octave."""
        if level not in self._gradients:
            plane = self.get_octave(level).astype(np.float64)
            gy, gx = np.gradient(plane)
            self._gradients[level] = (np.hypot(gx, gy), np.mod(np.arctan2(gy, gx), 2 * np.pi))
        return self._gradients[level]

    def _usable(self, keypoint: Keypoint) -> bool:
        if self._octave is None or keypoint.octave != self._octave_index:
            return False
        width, height = self.octave_width, self.octave_height
        return (width >= 3 and height >= 3
                and 0 <= keypoint.ix <= width - 1
                and 0 <= keypoint.iy <= height - 1
                and self.s_min + 1 <= keypoint.level <= self.s_max - 2)

    def _window(self, keypoint: Keypoint, radius: int) -> Tuple[np.ndarray, np.ndarray]:
        """Row and column index grids of the window around a keypoint."""
        width, height = self.octave_width, self.octave_height
        xi, yi = keypoint.ix, keypoint.iy
        ys = np.arange(max(-radius, 1 - yi), min(radius, height - 2 - yi) + 1) + yi
        xs = np.arange(max(-radius, 1 - xi), min(radius, width - 2 - xi) + 1) + xi
        return np.meshgrid(ys, xs, indexing="ij")

    def calc_keypoint_orientations(self, keypoint: Keypoint) -> List[float]:
        """
        Compute up to four dominant orientations of a keypoint.

        Returns
        -------
        list of float
            Angles in radians; empty if the keypoint does not belong to the
            current octave or lies too close to the border.
        """
        if not self._usable(keypoint):
            return []

        xper = 2.0 ** keypoint.octave
        x, y = keypoint.x / xper, keypoint.y / xper
        sigmaw = SIFT_ORI_SIG_FCTR * keypoint.sigma / xper
        radius = max(int(math.floor(3.0 * sigmaw)), 1)

        yy, xx = self._window(keypoint, radius)
        if yy.size == 0:
            return []
        r2 = (xx - x) ** 2 + (yy - y) ** 2
        keep = r2 < radius * radius + 0.6
        modulus, angle = self._gradient(keypoint.level)
        weight = np.exp(-r2[keep] / (2 * sigmaw * sigmaw)) * modulus[yy[keep], xx[keep]]

        nbins = SIFT_ORI_HIST_BINS
        fbin = nbins * angle[yy[keep], xx[keep]] / (2 * np.pi)
        bins = np.floor(fbin - 0.5)
        rbin = fbin - bins - 0.5
        bins = bins.astype(np.int64)
        hist = np.zeros(nbins)
        np.add.at(hist, bins % nbins, (1 - rbin) * weight)
        np.add.at(hist, (bins + 1) % nbins, rbin * weight)

        for _ in range(6):
            hist = (np.roll(hist, 1) + hist + np.roll(hist, -1)) / 3.0

        max_h = hist.max()
        angles = []
        for i in range(nbins):
            h0, hm, hp = hist[i], hist[i - 1], hist[(i + 1) % nbins]
            if h0 > SIFT_ORI_PEAK_RATIO * max_h and h0 > hm and h0 > hp:
                di = -0.5 * (hp - hm) / (hp + hm - 2 * h0)
                angles.append(float(2 * np.pi * (i + di + 0.5) / nbins))
                if len(angles) == SIFT_MAX_ORIENTATIONS:
                    break
        return angles

    def calc_keypoint_descriptor(self, keypoint: Keypoint, angle: float) -> np.ndarray:
        """
        Compute the SIFT descriptor of a keypoint at a given orientation.

        Returns
        -------
        np.ndarray
            ``float32`` vector of length 128 laid out as
            (row bin, column bin, orientation bin); all zeros if the keypoint
            cannot be described in the current octave.
        """
        nbp, nbo = SIFT_DESCR_WIDTH, SIFT_DESCR_HIST_BINS
        descr = np.zeros((nbp, nbp, nbo))
        if not self._usable(keypoint):
            return descr.ravel().astype(np.float32)

        xper = 2.0 ** keypoint.octave
        x, y = keypoint.x / xper, keypoint.y / xper
        sbp = SIFT_DESCR_SCL_FCTR * keypoint.sigma / xper
        radius = int(math.floor(math.sqrt(2.0) * sbp * (nbp + 1) / 2.0 + 0.5))
        st0, ct0 = math.sin(angle), math.cos(angle)

        yy, xx = self._window(keypoint, radius)
        modulus, grad_angle = self._gradient(keypoint.level)
        mod = modulus[yy, xx]
        theta = np.mod(grad_angle[yy, xx] - angle, 2 * np.pi)
        dx, dy = xx - x, yy - y

        nx = (ct0 * dx + st0 * dy) / sbp
        ny = (-st0 * dx + ct0 * dy) / sbp
        nt = nbo * theta / (2 * np.pi)
        wsigma = nbp / 2
        win = np.exp(-(nx * nx + ny * ny) / (2.0 * wsigma * wsigma))

        binx = np.floor(nx - 0.5)
        biny = np.floor(ny - 0.5)
        bint = np.floor(nt)
        rbinx = nx - (binx + 0.5)
        rbiny = ny - (biny + 0.5)
        rbint = nt - bint
        binx, biny, bint = binx.astype(np.int64), biny.astype(np.int64), bint.astype(np.int64)

        half = nbp // 2
        for dbinx in (0, 1):
            for dbiny in (0, 1):
                for dbint in (0, 1):
                    bx = binx + dbinx
                    by = biny + dbiny
                    ok = (bx >= -half) & (bx < half) & (by >= -half) & (by < half)
                    weight = (win * mod
                              * np.abs(1 - dbinx - rbinx)
                              * np.abs(1 - dbiny - rbiny)
                              * np.abs(1 - dbint - rbint))
                    np.add.at(descr, (by[ok] + half, bx[ok] + half, (bint[ok] + dbint) % nbo),
                              weight[ok])

        vector = descr.ravel()
        vector = vector / (np.linalg.norm(vector) + np.finfo(np.float32).eps)
        vector = np.minimum(vector, SIFT_DESCR_MAG_THR)
        vector = vector / (np.linalg.norm(vector) + np.finfo(np.float32).eps)
        return vector.astype(np.float32)
