import io
from typing import Callable, Optional, Sequence, TextIO
from scipy import special as sc
from torch.nn import functional as F
import numpy as np
import torch

from errors import AllocationFailure, InvalidIndex, InvalidOperation, ShapeMismatch
from shape import RANK, Shape, check_axis, read_tokens


DEFAULT_DTYPE = np.float32
EQUALITY_TOLERANCE = 1e-6


def _allocate(shape: Shape, dtype, fill=0) -> np.ndarray:
    if not shape.is_resolved:
        raise ShapeMismatch(f"can not allocate {shape!r} with an unknown sample count")
    try:
        return np.full(tuple(shape), fill, dtype=dtype)
    except MemoryError as e:
        raise AllocationFailure(f"can not allocate {shape!r} of {np.dtype(dtype).name}") from e


def _check_stride(stride: int) -> int:
    if not isinstance(stride, (int, np.integer)) or stride < 1:
        raise InvalidOperation(f"stride must be a positive integer, got {stride!r}")
    return int(stride)


def _check_width(width: int) -> int:
    if not isinstance(width, (int, np.integer)) or width < 1:
        raise InvalidOperation(f"window width must be a positive integer, got {width!r}")
    return int(width)


def _conv_extent(extent: int, kernel: int, stride: int, axis: str) -> int:
    if extent < kernel:
        raise ShapeMismatch(f"kernel extent {kernel} exceeds input extent {extent} on axis {axis}")
    return (extent - kernel) // stride + 1


class Tensor:
    """
        Dense rank-5 tensor.

        The buffer is a C-ordered numpy array, so the last axis (channel)
        is the fastest one. The axes are (sample, frame, width, height, channel).

        Every method returns a new tensor with its own buffer,
        the receiver is never modified (except by set, randomize and
        the foreach_*assign primitives).
    """
    def __init__(self, *extents, dtype=DEFAULT_DTYPE):
        shape = Shape(*extents) if extents else Shape(0, 0, 0, 0, 0)
        self.data = _allocate(shape, dtype)

    @classmethod
    def _wrap(cls, data: np.ndarray, dtype=None) -> "Tensor":
        t = cls.__new__(cls)
        t.data = np.array(data, dtype=data.dtype if dtype is None else dtype, order="C")  # always a private copy
        if t.data.ndim != RANK:
            raise ShapeMismatch(f"a tensor buffer has {RANK} axes, got {t.data.ndim}")
        return t

    def __str__(self):
        return str(self.data)

    def __repr__(self):
        return f"Tensor(shape={self.shape!r}, dtype={self.dtype.name})"

    @property
    def shape(self) -> Shape:
        return Shape(self.data.shape)

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def length(self) -> int:
        return self.data.size

    @property
    def nbytes(self) -> int:
        return self.data.nbytes

    def copy(self) -> "Tensor":
        return Tensor._wrap(self.data)

    def to_numpy(self) -> np.ndarray:
        return self.data.copy()

    # factories
    @classmethod
    def from_array(cls, values, shape=None, dtype=DEFAULT_DTYPE) -> "Tensor":
        """
            Builds a tensor from anything numpy accepts.

            Without a shape, the missing leading axes are filled with 1,
            so [[0.9, 0.1]] becomes a (1, 1, 1, 1, 2) tensor.
        """
        arr = np.asarray(values, dtype=dtype)
        if shape is not None:
            shape = Shape(shape)
            if arr.size != shape.size:
                raise ShapeMismatch(f"{arr.size} values do not fill {shape!r}")
            arr = arr.reshape(tuple(shape))
        else:
            if arr.ndim > RANK:
                raise ShapeMismatch(f"at most {RANK} axes are supported, got {arr.ndim}")
            arr = arr.reshape((1,) * (RANK - arr.ndim) + arr.shape)
        return cls._wrap(arr)

    @classmethod
    def full(cls, shape, value, dtype=DEFAULT_DTYPE) -> "Tensor":
        t = cls.__new__(cls)
        t.data = _allocate(Shape(shape), dtype, value)
        return t

    @classmethod
    def zeros(cls, shape, dtype=DEFAULT_DTYPE) -> "Tensor":
        return cls.full(shape, 0, dtype)

    @classmethod
    def ones(cls, shape, dtype=DEFAULT_DTYPE) -> "Tensor":
        return cls.full(shape, 1, dtype)

    @classmethod
    def eye(cls, n: int, dtype=DEFAULT_DTYPE) -> "Tensor":
        t = cls.zeros((1, 1, 1, n, n), dtype)
        t.data[0, 0, 0] = np.eye(n, dtype=dtype)
        return t

    @classmethod
    def random(cls, shape, rng: Optional[np.random.Generator] = None, dtype=DEFAULT_DTYPE) -> "Tensor":
        # uniform in [0, 1)
        return cls.zeros(shape, dtype).randomize(rng)

    @classmethod
    def mask(cls, shape, rate: float, rng: Optional[np.random.Generator] = None, dtype=DEFAULT_DTYPE) -> "Tensor":
        # 0 with probability rate, else 1 (dropout mask)
        rng = rng if rng is not None else np.random.default_rng()
        t = cls.zeros(shape, dtype)
        t.data[...] = rng.random(t.data.shape) >= rate
        return t

    def randomize(self, rng: Optional[np.random.Generator] = None) -> "Tensor":
        rng = rng if rng is not None else np.random.default_rng()
        self.data[...] = rng.random(self.data.shape)
        return self

    # element access
    @staticmethod
    def _full_subs(subs: Sequence[int]) -> tuple:
        # omitted leading axes are 0: at(l) == at(0, 0, 0, 0, l)
        if not 1 <= len(subs) <= RANK:
            raise InvalidIndex(f"expected 1 to {RANK} subscripts, got {len(subs)}")
        return (0,) * (RANK - len(subs)) + tuple(subs)

    def at(self, *subs: int):
        return self.data.item(self.shape.sub2ind(*self._full_subs(subs)))

    def set(self, value, *subs: int):
        self.data.flat[self.shape.sub2ind(*self._full_subs(subs))] = value

    def get(self, idx: int):
        if not 0 <= idx < self.length:
            raise InvalidIndex(f"linear index {idx} out of range [0, {self.length})")
        return self.data.item(idx)

    # iteration primitives
    def foreach(self, func: Callable[[int, int, int, int, int], None]):
        # lexicographic over (sample, frame, width, height, channel)
        for subs in np.ndindex(*self.data.shape):
            func(*subs)

    def foreach_assign(self, func: Callable[[int, int, int, int, int], float]):
        for subs in np.ndindex(*self.data.shape):
            self.data[subs] = func(*subs)

    def foreach_elem(self, func: Callable[[int], None]):
        for i in range(self.length):
            func(i)

    def foreach_elem_assign(self, func: Callable[[int], float]):
        flat = self.data.reshape(-1)  # a view, the buffer is contiguous
        for i in range(self.length):
            flat[i] = func(i)

    # element-wise arithmetic
    def _elementwise(self, other, func) -> "Tensor":
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            if isinstance(other, Tensor):
                self.shape.broadcast(other.shape)
                return Tensor._wrap(func(self.data, other.data), self.dtype)
            return Tensor._wrap(func(self.data, self.dtype.type(other)), self.dtype)

    def _relementwise(self, other, func) -> "Tensor":  # scalar op tensor
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            return Tensor._wrap(func(self.dtype.type(other), self.data), self.dtype)

    def __add__(self, other):
        return self._elementwise(other, np.add)

    def __radd__(self, other):
        return self._relementwise(other, np.add)

    def __sub__(self, other):
        return self._elementwise(other, np.subtract)

    def __rsub__(self, other):
        return self._relementwise(other, np.subtract)

    def __mul__(self, other):
        return self._elementwise(other, np.multiply)

    def __rmul__(self, other):
        return self._relementwise(other, np.multiply)

    def __truediv__(self, other):
        return self._elementwise(other, np.divide)

    def __rtruediv__(self, other):
        return self._relementwise(other, np.divide)

    def __neg__(self):
        return self.neg()

    def __matmul__(self, other):
        return self.matmul(other)

    def add(self, other: "Tensor") -> "Tensor":
        return self + other

    def sub(self, other: "Tensor") -> "Tensor":
        return self - other

    def __eq__(self, other):
        if not isinstance(other, Tensor):
            return NotImplemented
        if self.shape != other.shape:
            return False
        diff = np.abs(self.data.astype(np.float64) - other.data.astype(np.float64))
        return bool(np.all(diff <= EQUALITY_TOLERANCE))

    # linear algebra
    def matmul(self, other: "Tensor") -> "Tensor":
        """
            out[s, f, w, h, m] = sum_k self[s, f, w, h, k] * other[0, 0, 0, k, m]

            other holds a single (k, m) matrix which is shared by
            every (sample, frame, width) slice of self.
        """
        a, b = self.shape, other.shape
        if tuple(b[:3]) != (1, 1, 1):
            raise ShapeMismatch(f"right operand {b!r} must have unit leading axes")
        if a[4] != b[3]:
            raise ShapeMismatch(f"can not multiply {a!r} by {b!r}: {a[4]} != {b[3]}")
        return Tensor._wrap(np.matmul(self.data, other.data[0, 0, 0]), self.dtype)

    def transpose(self) -> "Tensor":  # swaps height and channel
        return Tensor._wrap(np.swapaxes(self.data, 3, 4))

    def permute(self, order: Sequence[int]) -> "Tensor":
        # axis i of the result is axis order[i] of self
        if sorted(order) != list(range(RANK)):
            raise InvalidIndex(f"{order!r} is not a permutation of the {RANK} axes")
        return Tensor._wrap(np.transpose(self.data, tuple(order)))

    # structural
    def reshape(self, *extents) -> "Tensor":
        shape = Shape(*extents)
        if shape.size != self.length:
            raise ShapeMismatch(f"can not reshape {self.shape!r} into {shape!r}")
        return Tensor._wrap(self.data.reshape(tuple(shape)))

    def flatten(self, axis: int = 2) -> "Tensor":
        return self.reshape(self.shape.flatten(axis))

    def slice(self, start: int, end: int, axis: int) -> "Tensor":
        axis = check_axis(axis)
        if not 0 <= start <= end <= self.shape[axis]:
            raise InvalidIndex(f"slice [{start}, {end}) out of range on axis {axis} of {self.shape!r}")
        index = [slice(None)] * RANK
        index[axis] = slice(start, end)
        return Tensor._wrap(self.data[tuple(index)])

    # reductions
    def reduce_sum(self, axis: int) -> "Tensor":
        return Tensor._wrap(np.sum(self.data, axis=check_axis(axis), keepdims=True), self.dtype)

    def reduce_mean(self, axis: Optional[int] = None) -> "Tensor":
        # without an axis, the mean of every element as a (1, 1, 1, 1, 1) tensor
        with np.errstate(divide="ignore", invalid="ignore"):
            if axis is None:
                total = np.sum(self.data, keepdims=True)
                return Tensor._wrap(total / self.dtype.type(self.length), self.dtype)
            return self.reduce_sum(axis) / self.shape[check_axis(axis)]

    def find_min(self):
        if self.length == 0:
            raise InvalidOperation("find_min of an empty tensor")
        return self.data.min().item()

    def find_max(self):
        if self.length == 0:
            raise InvalidOperation("find_max of an empty tensor")
        return self.data.max().item()

    # spatial (width, height) padding/clipping/rotation
    def padding(self, width: int) -> "Tensor":
        if width < 0:
            raise ShapeMismatch(f"padding must not be negative, got {width}")
        pads = ((0, 0), (0, 0), (width, width), (width, width), (0, 0))
        return Tensor._wrap(np.pad(self.data, pads))

    def clipping(self, margin: int) -> "Tensor":
        _, _, w, h, _ = self.shape
        if margin < 0 or 2 * margin > w or 2 * margin > h:
            raise ShapeMismatch(f"can not clip {margin} from each side of {self.shape!r}")
        return Tensor._wrap(self.data[:, :, margin:w - margin, margin:h - margin, :])

    def rotate180(self) -> "Tensor":
        return Tensor._wrap(self.data[:, :, ::-1, ::-1, :])

    # convolution
    def conv2d(self, filter: "Tensor", bias: Optional["Tensor"] = None, stride: int = 1) -> "Tensor":
        """
            Frame-wise 2D convolution (cross-correlation, no padding).

            self:   (N, F, W, H, C)
            filter: (O, F, Kw, Kh, C), every frame has its own filter slice
            bias:   O values, (1, 1, 1, 1, O)
            out:    (N, F, (W - Kw) / stride + 1, (H - Kh) / stride + 1, O)

            The frames are mapped onto torch convolution groups.
        """
        stride = _check_stride(stride)
        n, f, w, h, c = self.shape
        o, kf, kw, kh, kc = filter.shape
        if kc != c:
            raise ShapeMismatch(f"filter channels {kc} do not match input channels {c}")
        if kf != f:
            raise ShapeMismatch(f"filter frames {kf} do not match input frames {f}")
        ow = _conv_extent(w, kw, stride, "width")
        oh = _conv_extent(h, kh, stride, "height")
        b = self._bias_vector(bias, o)
        if n == 0 or f == 0 or o == 0:
            return Tensor.zeros((n, f, ow, oh, o), self.dtype)

        # (N, F, W, H, C) -> (N, F*C, W, H) and (O, F, Kw, Kh, C) -> (F*O, C, Kw, Kh)
        x = np.ascontiguousarray(self.data.transpose(0, 1, 4, 2, 3)).reshape(n, f * c, w, h)
        k = filter.data.astype(self.dtype).transpose(1, 0, 4, 2, 3).reshape(f * o, c, kw, kh)
        tb = None if b is None else torch.from_numpy(np.tile(b, f))
        y = F.conv2d(torch.from_numpy(x), torch.from_numpy(np.ascontiguousarray(k)), tb, stride=stride, groups=f)
        out = y.numpy().reshape(n, f, o, ow, oh).transpose(0, 1, 3, 4, 2)
        return Tensor._wrap(out, self.dtype)

    def conv3d(self, filter: "Tensor", bias: Optional["Tensor"] = None, stride: int = 1) -> "Tensor":
        """
            3D convolution over (frame, width, height).

            self:   (N, F, W, H, C)
            filter: (O, Kf, Kw, Kh, C)
            out:    (N, (F - Kf) / stride + 1, (W - Kw) / stride + 1, (H - Kh) / stride + 1, O)
        """
        stride = _check_stride(stride)
        n, f, w, h, c = self.shape
        o, kf, kw, kh, kc = filter.shape
        if kc != c:
            raise ShapeMismatch(f"filter channels {kc} do not match input channels {c}")
        of = _conv_extent(f, kf, stride, "frame")
        ow = _conv_extent(w, kw, stride, "width")
        oh = _conv_extent(h, kh, stride, "height")
        b = self._bias_vector(bias, o)
        if n == 0 or o == 0:
            return Tensor.zeros((n, of, ow, oh, o), self.dtype)

        x = np.ascontiguousarray(self.data.transpose(0, 4, 1, 2, 3))  # (N, C, F, W, H)
        k = np.ascontiguousarray(filter.data.astype(self.dtype).transpose(0, 4, 1, 2, 3))  # (O, C, Kf, Kw, Kh)
        tb = None if b is None else torch.from_numpy(b)
        y = F.conv3d(torch.from_numpy(x), torch.from_numpy(k), tb, stride=stride)
        return Tensor._wrap(y.numpy().transpose(0, 2, 3, 4, 1), self.dtype)

    def _bias_vector(self, bias: Optional["Tensor"], n_filters: int) -> Optional[np.ndarray]:
        if bias is None:
            return None
        if bias.length != n_filters:
            raise ShapeMismatch(f"bias {bias.shape!r} does not hold {n_filters} values")
        return bias.data.reshape(-1).astype(self.dtype)

    # pooling (non-overlapping width x width windows on axes 2, 3)
    def _windows(self, width: int) -> np.ndarray:
        width = _check_width(width)
        n, f, w, h, c = self.shape
        if w % width or h % width:
            raise ShapeMismatch(f"pooling width {width} does not divide {self.shape!r}")
        return self.data.reshape(n, f, w // width, width, h // width, width, c)

    def _window_argmask(self, width: int, pick) -> np.ndarray:
        # marks the first max/min of every window in row-major window order
        win = self._windows(width)
        n, f, pw, _, ph, _, c = win.shape
        if win.size == 0:
            return np.zeros(self.data.shape, dtype=bool)
        flat = win.transpose(0, 1, 2, 4, 6, 3, 5).reshape(n, f, pw, ph, c, width * width)
        mask = np.arange(width * width) == pick(flat, axis=-1)[..., None]
        return mask.reshape(n, f, pw, ph, c, width, width).transpose(0, 1, 2, 5, 3, 6, 4).reshape(self.data.shape)

    def max_pooling(self, width: int) -> "Tensor":
        return Tensor._wrap(self._windows(width).max(axis=(3, 5)), self.dtype)

    def min_pooling(self, width: int) -> "Tensor":
        return Tensor._wrap(self._windows(width).min(axis=(3, 5)), self.dtype)

    def avg_pooling(self, width: int) -> "Tensor":
        summed = self._windows(width).sum(axis=(3, 5))
        return Tensor._wrap(summed / self.dtype.type(width * width), self.dtype)

    # upsampling (inverse of pooling)
    def _upsampling(self, original: "Tensor", width: int, pick) -> "Tensor":
        width = _check_width(width)
        n, f, w, h, c = self.shape
        if original.shape != Shape(n, f, w * width, h * width, c):
            raise ShapeMismatch(f"{original.shape!r} was not pooled into {self.shape!r} with width {width}")
        mask = original._window_argmask(width, pick)
        spread = np.repeat(np.repeat(self.data, width, axis=2), width, axis=3)
        return Tensor._wrap(np.where(mask, spread, 0), self.dtype)

    def max_upsampling(self, original: "Tensor", width: int) -> "Tensor":
        return self._upsampling(original, width, np.argmax)

    def min_upsampling(self, original: "Tensor", width: int) -> "Tensor":
        return self._upsampling(original, width, np.argmin)

    def avg_upsampling(self, width: int) -> "Tensor":
        width = _check_width(width)
        uniform = Tensor.full((1, 1, width, width, 1), 1.0 / (width * width), self.dtype)
        return self.kronecker(uniform)

    def kronecker(self, other: "Tensor") -> "Tensor":
        # every element of self scales a copy of other
        return Tensor._wrap(np.kron(self.data, other.data), self.dtype)

    # math functions
    def sigmoid(self) -> "Tensor":
        return Tensor._wrap(sc.expit(self.data), self.dtype)

    def relu(self, max_value: Optional[float] = None, threshold: float = 0.0, negative_slope: float = 0.0) -> "Tensor":
        """
            x >= max_value              -> max_value
            threshold <= x < max_value  -> x
            x < threshold               -> negative_slope * (x - threshold)
        """
        x = self.data
        upper = np.inf if max_value is None else max_value
        out = np.where(x >= upper, upper, np.where(x >= threshold, x, negative_slope * (x - threshold)))
        return Tensor._wrap(out, self.dtype)

    def softmax(self, axis: int = 4) -> "Tensor":
        return Tensor._wrap(sc.softmax(self.data, axis=check_axis(axis)), self.dtype)

    def tanh(self) -> "Tensor":
        return Tensor._wrap(np.tanh(self.data), self.dtype)

    def neg(self) -> "Tensor":
        return Tensor._wrap(np.negative(self.data))

    def hinge(self, t: float) -> "Tensor":
        return Tensor._wrap(np.maximum(1 - t * self.data, 0), self.dtype)

    def log(self) -> "Tensor":
        with np.errstate(divide="ignore", invalid="ignore"):
            return Tensor._wrap(np.log(self.data), self.dtype)

    def exp(self) -> "Tensor":
        with np.errstate(over="ignore"):
            return Tensor._wrap(np.exp(self.data), self.dtype)

    def pow(self, k) -> "Tensor":
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            return Tensor._wrap(np.power(self.data, k), self.dtype)

    def one_hot(self, num: int) -> "Tensor":
        """
            Encodes the integer labels held on the channel axis.

            Codes are handed out in the order the labels are first met,
            walking the tensor lexicographically: the first distinct
            label gets channel 0, the second channel 1, etc.
        """
        if self.shape[4] != 1:
            raise ShapeMismatch(f"one_hot expects a single channel, got {self.shape!r}")
        out = Tensor.zeros(self.shape.set(4, num), self.dtype)
        codes = {}

        def encode(i, j, k, l, m):
            label = int(self.data[i, j, k, l, m])
            if label not in codes:
                if len(codes) == num:
                    raise InvalidIndex(f"more than {num} distinct labels")
                codes[label] = len(codes)
            out.data[i, j, k, l, codes[label]] = 1

        self.foreach(encode)
        return out

    # serialize & deserialize
    def dump(self, stream: TextIO):
        # shape line, then the buffer (last axis fastest) on one line;
        # load() only relies on whitespace between the values
        self.shape.dump(stream)
        stream.write(" ".join(repr(v) for v in self.data.ravel().tolist()) + "\n")

    @classmethod
    def load(cls, stream: TextIO, dtype=DEFAULT_DTYPE) -> "Tensor":
        shape = Shape.load(stream)
        values = [float(token) for token in read_tokens(stream, shape.size)]
        if len(values) != shape.size:
            raise ShapeMismatch(f"stream holds {len(values)} values for {shape!r}")
        return cls._wrap(np.array(values, dtype=np.float64).reshape(tuple(shape)), dtype)

    def dumps(self) -> str:
        stream = io.StringIO()
        self.dump(stream)
        return stream.getvalue()

    @classmethod
    def loads(cls, text: str, dtype=DEFAULT_DTYPE) -> "Tensor":
        return cls.load(io.StringIO(text), dtype)
