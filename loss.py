"""
    Loss operators, both reduce to a (1, 1, 1, 1, 1) tensor.

    inputs: [y_predicted, y_real]
    The delta returned for the prediction is (y_predicted - y_real),
    scaled by the incoming gradient. For MSE this leaves out the 2/N factor
    of the textbook derivative, for CrossEntropy it is the delta of a
    sigmoid/softmax output layer fused with the loss.
    The target edge receives the negated delta.
"""

from node import Node, Operation
from ops import unbroadcast
from tensor import Tensor


class Loss(Operation):
    n_inputs = 2

    def _backward(self, index: int, grad: Tensor, y_predicted: Tensor, y_real: Tensor) -> Tensor:
        delta = (y_predicted - y_real) * grad.get(0)  # the loss is a single value
        if index == 0:
            return unbroadcast(delta, y_predicted.shape)
        return unbroadcast(delta.neg(), y_real.shape)


class MSE(Loss):
    def _forward(self, y_predicted: Tensor, y_real: Tensor) -> Tensor:
        y_diff = y_predicted - y_real
        return (y_diff * y_diff).reduce_mean()


class CrossEntropy(Loss):
    def _forward(self, y_predicted: Tensor, y_real: Tensor) -> Tensor:
        error = 0.0 - (y_real * y_predicted.log() + (1.0 - y_real) * (1.0 - y_predicted).log())
        return error.reduce_mean()


def mse(y_predicted: Node, y_real: Node) -> Operation:
    return MSE(y_predicted, y_real)


def cross_entropy(y_predicted: Node, y_real: Node) -> Operation:
    return CrossEntropy(y_predicted, y_real)
