"""
    This module implements the operators
    to build graphs.
    Each operator has a local gradient rule for backward propagation:
    _backward(index, grad, *inputs) returns the delta flowing into
    inputs[index], given grad, the total gradient of the output.

    The factory functions at the end construct and wire the operators.
"""

from typing import Optional, Sequence
from numpy.lib.stride_tricks import sliding_window_view
import numpy as np

from errors import InvalidOperation
from node import Node, Operation
from shape import RANK, Shape
from tensor import Tensor


def unbroadcast(grad: Tensor, shape: Shape) -> Tensor:
    # sum out the axes an operand was repeated along
    for axis in range(RANK):
        if shape[axis] == 1 and grad.shape[axis] != 1:
            grad = grad.reduce_sum(axis)
    return grad


def _matmul_rhs_grad(lhs: Tensor, grad: Tensor) -> Tensor:
    # the right operand is shared by every (sample, frame, width) slice
    w = np.einsum("sfwhk,sfwhm->km", lhs.data, grad.data, optimize=True)
    return Tensor.from_array(w, dtype=lhs.dtype)


def _dilate(t: Tensor, stride: int, axes: Sequence[int]) -> Tensor:
    # stride - 1 zeros between neighbours along axes
    if stride == 1:
        return t
    shape = list(t.shape)
    index = [slice(None)] * RANK
    for axis in axes:
        shape[axis] = (shape[axis] - 1) * stride + 1 if shape[axis] else 0
        index[axis] = slice(None, None, stride)
    out = Tensor.zeros(shape, t.dtype)
    out.data[tuple(index)] = t.data
    return out


def _zero_extend(t: Tensor, shape) -> Tensor:
    # zeros appended at the end of every axis up to shape
    pads = [(0, target - e) for e, target in zip(t.shape, shape)]
    return Tensor.from_array(np.pad(t.data, pads), dtype=t.dtype)


class Add(Operation):
    n_inputs = 2

    def _forward(self, x: Tensor, y: Tensor) -> Tensor:
        return x + y

    def _backward(self, index: int, grad: Tensor, x: Tensor, y: Tensor) -> Tensor:
        return unbroadcast(grad, (x, y)[index].shape)


class Sub(Operation):
    n_inputs = 2

    def _forward(self, x: Tensor, y: Tensor) -> Tensor:
        return x - y

    def _backward(self, index: int, grad: Tensor, x: Tensor, y: Tensor) -> Tensor:
        if index == 0:
            return unbroadcast(grad, x.shape)
        return unbroadcast(grad.neg(), y.shape)


class Mul(Operation):
    n_inputs = 2

    def _forward(self, x: Tensor, y: Tensor) -> Tensor:
        return x * y

    def _backward(self, index: int, grad: Tensor, x: Tensor, y: Tensor) -> Tensor:
        if index == 0:
            return unbroadcast(grad * y, x.shape)
        return unbroadcast(grad * x, y.shape)


class MatMul(Operation):
    n_inputs = 2

    def _forward(self, x: Tensor, y: Tensor) -> Tensor:
        return x.matmul(y)

    def _backward(self, index: int, grad: Tensor, x: Tensor, y: Tensor) -> Tensor:
        if index == 0:
            return grad.matmul(y.transpose())  # DX = DY @ Y.T
        return _matmul_rhs_grad(x, grad)  # DY = X.T @ DY summed over the batch axes


class Convolution(Operation):
    """
        Shared part of Conv2D and Conv3D.

        inputs: [x, kernel, bias], kernel and bias are created by build().
        The input is zero padded on width and height before the convolution.
    """
    spatial_axes = (2, 3)

    def __init__(self, x: Node, width: int, padding: int, stride: int, n_filters: int, name: Optional[str] = None):
        super().__init__(x, name=name)
        if width < 1 or n_filters < 1:
            raise InvalidOperation(f"kernel width and filter count must be positive, got {width} and {n_filters}")
        if stride < 1:
            raise InvalidOperation(f"stride must be positive, got {stride}")
        if padding < 0:
            raise InvalidOperation(f"padding must not be negative, got {padding}")
        self.width = width
        self.padding = padding
        self.stride = stride
        self.n_filters = n_filters

    def _convolve(self, x: Tensor, kernel: Tensor, bias: Optional[Tensor] = None, stride: int = 1) -> Tensor:
        raise NotImplementedError("Convolution kernel requires implementation")

    def _forward(self, x: Tensor, kernel: Tensor, bias: Tensor) -> Tensor:
        return self._convolve(x.padding(self.padding), kernel, bias, self.stride)

    def _backward(self, index: int, grad: Tensor, x: Tensor, kernel: Tensor, bias: Tensor) -> Tensor:
        if index == 0:
            return self._input_grad(grad, x, kernel)
        if index == 1:
            return self._kernel_grad(grad, x.padding(self.padding), kernel)
        return unbroadcast(grad, bias.shape)

    def _input_grad(self, grad: Tensor, x: Tensor, kernel: Tensor) -> Tensor:
        # full correlation of the (stride dilated) grad with the rotated filter,
        # the filter's input and output channels swap places
        n, f, w, h, c = x.shape
        axes = self.spatial_axes
        g = _dilate(grad, self.stride, axes)
        pads = [(self.width - 1,) * 2 if axis in axes else (0, 0) for axis in range(RANK)]
        g = Tensor.from_array(np.pad(g.data, pads), dtype=grad.dtype)
        flip = tuple(slice(None, None, -1) if axis in axes else slice(None) for axis in range(RANK))
        rotated = Tensor.from_array(kernel.data[flip], dtype=kernel.dtype).permute((4, 1, 2, 3, 0))

        delta = self._convolve(g, rotated)
        # rows/columns skipped by the stride receive nothing
        delta = _zero_extend(delta, (n, f, w + 2 * self.padding, h + 2 * self.padding, c))
        return delta.clipping(self.padding)

    def _kernel_grad(self, grad: Tensor, xp: Tensor, kernel: Tensor) -> Tensor:
        raise NotImplementedError("Convolution kernel gradient requires implementation")

    def _windows(self, xp: Tensor, kernel: Tensor) -> np.ndarray:
        # strided views of the padded input, one window per output element
        axes = self.spatial_axes
        win = sliding_window_view(xp.data, tuple(kernel.shape[a] for a in axes), axis=axes)
        index = [slice(None, None, self.stride) if axis in axes else slice(None) for axis in range(RANK)]
        return win[tuple(index)]


class Conv2D(Convolution):
    """
        Frame-wise 2D convolution.
        kernel: (n_filters, F, width, width, C_in), bias: (1, 1, 1, 1, n_filters)
    """
    def _build(self, input_shape: Shape, rng: np.random.Generator):
        self.add_weight("kernel", (self.n_filters, input_shape[1], self.width, self.width, input_shape[4]), rng)
        self.add_weight("bias", (1, 1, 1, 1, self.n_filters), rng)

    def _convolve(self, x: Tensor, kernel: Tensor, bias: Optional[Tensor] = None, stride: int = 1) -> Tensor:
        return x.conv2d(kernel, bias, stride)

    def _kernel_grad(self, grad: Tensor, xp: Tensor, kernel: Tensor) -> Tensor:
        win = self._windows(xp, kernel)  # (N, F, U, V, C, Kw, Kh)
        dk = np.einsum("nfuvckl,nfuvo->ofklc", win, grad.data, optimize=True)
        return Tensor.from_array(dk, dtype=kernel.dtype)


class Conv3D(Convolution):
    """
        3D convolution over (frame, width, height).
        kernel: (n_filters, width, width, width, C_in), bias: (1, 1, 1, 1, n_filters)
        Only width and height are padded.
    """
    spatial_axes = (1, 2, 3)

    def _build(self, input_shape: Shape, rng: np.random.Generator):
        self.add_weight("kernel", (self.n_filters, self.width, self.width, self.width, input_shape[4]), rng)
        self.add_weight("bias", (1, 1, 1, 1, self.n_filters), rng)

    def _convolve(self, x: Tensor, kernel: Tensor, bias: Optional[Tensor] = None, stride: int = 1) -> Tensor:
        return x.conv3d(kernel, bias, stride)

    def _kernel_grad(self, grad: Tensor, xp: Tensor, kernel: Tensor) -> Tensor:
        win = self._windows(xp, kernel)  # (N, F', U, V, C, Kf, Kw, Kh)
        dk = np.einsum("nfuvcakl,nfuvo->oaklc", win, grad.data, optimize=True)
        return Tensor.from_array(dk, dtype=kernel.dtype)


class Pooling(Operation):
    def __init__(self, x: Node, width: int, name: Optional[str] = None):
        super().__init__(x, name=name)
        if width < 1:
            raise InvalidOperation(f"pooling width must be positive, got {width}")
        self.width = width


class MaxPooling(Pooling):
    def _forward(self, x: Tensor) -> Tensor:
        return x.max_pooling(self.width)

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        # only the (first) maximum of each window receives the gradient
        return grad.max_upsampling(x, self.width)


class MinPooling(Pooling):
    def _forward(self, x: Tensor) -> Tensor:
        return x.min_pooling(self.width)

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        return grad.min_upsampling(x, self.width)


class AvgPooling(Pooling):
    def _forward(self, x: Tensor) -> Tensor:
        return x.avg_pooling(self.width)

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        return grad.avg_upsampling(self.width)


class Reshape(Operation):
    def __init__(self, x: Node, shape, name: Optional[str] = None):
        super().__init__(x, name=name)
        self.output_shape = Shape(shape)  # UNKNOWN samples follow the input

    def _forward(self, x: Tensor) -> Tensor:
        return x.reshape(self.output_shape.resolve(x.shape[0]))

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        # reshape does not change the number of elements
        # only reorders them
        return grad.reshape(x.shape)


class Flatten(Operation):
    """
        (N, F, W, H, C) -> (N, 1, 1, 1, F*W*H*C)
        The features end up on the channel axis, where FullConnected reads them.
    """
    def _forward(self, x: Tensor) -> Tensor:
        n, f, w, h, c = x.shape
        return x.reshape(n, 1, 1, 1, f * w * h * c)

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        return grad.reshape(x.shape)


class FullConnected(Operation):
    """
        out = x @ weight + bias
        weight: (1, 1, 1, C_in, n_outputs), bias: (1, 1, 1, 1, n_outputs)
    """
    def __init__(self, x: Node, n_outputs: int, name: Optional[str] = None):
        super().__init__(x, name=name)
        if n_outputs < 1:
            raise InvalidOperation(f"n_outputs must be positive, got {n_outputs}")
        self.n_outputs = n_outputs

    def _build(self, input_shape: Shape, rng: np.random.Generator):
        self.add_weight("weight", (1, 1, 1, input_shape[4], self.n_outputs), rng)
        self.add_weight("bias", (1, 1, 1, 1, self.n_outputs), rng)

    def _forward(self, x: Tensor, weight: Tensor, bias: Tensor) -> Tensor:
        return x.matmul(weight) + bias

    def _backward(self, index: int, grad: Tensor, x: Tensor, weight: Tensor, bias: Tensor) -> Tensor:
        if index == 0:
            return grad.matmul(weight.transpose())
        if index == 1:
            return _matmul_rhs_grad(x, grad)
        return unbroadcast(grad, bias.shape)


class Sigmoid(Operation):
    def _forward(self, x: Tensor) -> Tensor:
        return x.sigmoid()

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        s = x.sigmoid()
        return grad * s * (1.0 - s)


class Tanh(Operation):
    def _forward(self, x: Tensor) -> Tensor:
        return x.tanh()

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        t = x.tanh()
        return grad * (1.0 - t * t)


class ReLU(Operation):
    def _forward(self, x: Tensor) -> Tensor:
        return x.relu()

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        return grad * Tensor.from_array(x.data > 0, dtype=grad.dtype)


class LeakyReLU(Operation):
    def __init__(self, x: Node, max_value: Optional[float] = None, threshold: float = 0.0,
                 negative_slope: float = 0.1, name: Optional[str] = None):
        super().__init__(x, name=name)
        self.max_value = max_value
        self.threshold = threshold
        self.negative_slope = negative_slope

    def _forward(self, x: Tensor) -> Tensor:
        return x.relu(self.max_value, self.threshold, self.negative_slope)

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        # flat above max_value, identity down to threshold, negative_slope below
        upper = np.inf if self.max_value is None else self.max_value
        d = np.where(x.data >= upper, 0.0, np.where(x.data >= self.threshold, 1.0, self.negative_slope))
        return grad * Tensor.from_array(d, dtype=grad.dtype)


class Softmax(Operation):
    def __init__(self, x: Node, axis: int = 4, name: Optional[str] = None):
        super().__init__(x, name=name)
        self.axis = axis

    def _forward(self, x: Tensor) -> Tensor:
        return x.softmax(self.axis)

    def _backward(self, index: int, grad: Tensor, x: Tensor) -> Tensor:
        # Jacobian-vector product: s * (grad - sum(grad * s))
        s = x.softmax(self.axis)
        return s * (grad - (grad * s).reduce_sum(self.axis))


# factories

def add(x: Node, y: Node) -> Operation:
    return Add(x, y)


def sub(x: Node, y: Node) -> Operation:
    return Sub(x, y)


def mul(x: Node, y: Node) -> Operation:
    return Mul(x, y)


def matmul(x: Node, y: Node) -> Operation:
    return MatMul(x, y)


def conv2d(x: Node, width: int, padding: int, stride: int, n_filters: int) -> Operation:
    return Conv2D(x, width, padding, stride, n_filters)


def conv3d(x: Node, width: int, padding: int, stride: int, n_filters: int) -> Operation:
    return Conv3D(x, width, padding, stride, n_filters)


def maxpooling(x: Node, width: int) -> Operation:
    return MaxPooling(x, width)


def minpooling(x: Node, width: int) -> Operation:
    return MinPooling(x, width)


def avgpooling(x: Node, width: int) -> Operation:
    return AvgPooling(x, width)


def reshape(x: Node, shape) -> Operation:
    return Reshape(x, shape)


def flatten(x: Node) -> Operation:
    return Flatten(x)


def full_connect(x: Node, n_outputs: int) -> Operation:
    return FullConnected(x, n_outputs)


def sigmoid(x: Node) -> Operation:
    return Sigmoid(x)


def tanh(x: Node) -> Operation:
    return Tanh(x)


def relu(x: Node) -> Operation:
    return ReLU(x)


def leaky_relu(x: Node, max_value: Optional[float] = None, threshold: float = 0.0, negative_slope: float = 0.1) -> Operation:
    return LeakyReLU(x, max_value, threshold, negative_slope)


def softmax(x: Node, axis: int = 4) -> Operation:
    return Softmax(x, axis)
