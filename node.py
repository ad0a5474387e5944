"""
    Vertices of the computation graph.

    There are three kinds of nodes:
    - placeholders: fed with a tensor on every run
    - variables: trainable parameters, they carry a value and a gradient
    - operations: compute their output from the outputs of their inputs

    An operation owns its inputs (forward edges). Every node also keeps
    weak back-references to the operations consuming it, these never keep
    a producer or a consumer alive.
"""

import logging
import weakref
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from errors import InvalidIndex, InvalidOperation, ShapeMismatch
from shape import Shape
from tensor import DEFAULT_DTYPE, Tensor

logger = logging.getLogger(__name__)


class NodeType(Enum):
    PLACEHOLDER = "placeholder"
    VARIABLE = "variable"
    OPERATION = "operation"


class Node:
    node_type: NodeType

    def __init__(self, name: Optional[str] = None):
        self.name = name
        self.output: Optional[Tensor] = None  # valid after a session run
        self._consumers: List[weakref.ref] = []

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"

    @property
    def consumers(self) -> List["Operation"]:
        alive = (ref() for ref in self._consumers)
        return [op for op in alive if op is not None]

    def _add_consumer(self, op: "Operation"):
        self._consumers.append(weakref.ref(op))


class Placeholder(Node):
    node_type = NodeType.PLACEHOLDER

    def __init__(self, shape, name: Optional[str] = None):
        super().__init__(name)
        self.shape = Shape(shape)  # the sample count may be UNKNOWN


class Variable(Node):
    """
        Named trainable parameter.

        Without an explicit value it starts from a uniform random fill
        drawn from rng. grad is overwritten by every backward pass.
    """
    node_type = NodeType.VARIABLE

    def __init__(self, name: str, shape=None, value: Optional[Tensor] = None, require_grad: bool = True,
                 rng: Optional[np.random.Generator] = None, dtype=DEFAULT_DTYPE):
        super().__init__(name)
        if value is None:
            if shape is None:
                raise ShapeMismatch(f"variable {name!r} needs a shape or a value")
            value = Tensor.random(shape, rng, dtype)
        elif shape is not None and Shape(shape) != value.shape:
            raise ShapeMismatch(f"value {value.shape!r} of {name!r} does not match {Shape(shape)!r}")
        self.value = value
        self.grad = Tensor.zeros(value.shape, value.dtype)
        self.require_grad = require_grad


class Operation(Node):
    """
        Base of every operation.

        inputs holds the semantic operands first (n_inputs of them),
        then the parameter variables appended by build().

        Subclasses implement:
        - _forward(*inputs) -> Tensor
        - _backward(index, grad, *inputs) -> Tensor, the delta for inputs[index]
        - _build(input_shape, rng), only when they own parameters
    """
    node_type = NodeType.OPERATION
    n_inputs = 1

    def __init__(self, *inputs: Node, name: Optional[str] = None):
        super().__init__(name)
        if len(inputs) != self.n_inputs:
            raise InvalidOperation(f"{type(self).__name__} takes {self.n_inputs} inputs, got {len(inputs)}")
        self.inputs: List[Node] = list(inputs)
        self.built = False
        for node in self.inputs:
            node._add_consumer(self)

    @property
    def parameters(self) -> List[Variable]:
        return self.inputs[self.n_inputs:]

    def build(self, input_shape, rng: Optional[np.random.Generator] = None) -> List[Variable]:
        # called once, before the first forward pass; returns the new parameters
        if self.built:
            return []
        before = len(self.inputs)
        self._build(Shape(input_shape), rng if rng is not None else np.random.default_rng())
        self.built = True
        params = self.inputs[before:]
        for param in params:
            logger.debug("built %r with shape %r", param, param.value.shape)
        return params

    def _build(self, input_shape: Shape, rng: np.random.Generator):
        pass

    def add_weight(self, name: str, shape, rng: np.random.Generator, trainable: bool = True) -> Variable:
        prefix = self.name or type(self).__name__.lower()
        weight = Variable(f"{prefix}/{name}", shape, require_grad=trainable, rng=rng)
        self.inputs.append(weight)
        weight._add_consumer(self)
        return weight

    def input_values(self) -> List[Tensor]:
        values = []
        for node in self.inputs:
            if node.output is None:
                raise InvalidOperation(f"{node!r} has no output yet, run the session first")
            values.append(node.output)
        return values

    def compute(self, inputs: Sequence[Tensor]) -> Tensor:
        return self._forward(*inputs)

    def backward(self, grad: Tensor, index: int) -> Tensor:
        # grad is the gradient of this operation's output
        if not 0 <= index < len(self.inputs):
            raise InvalidIndex(f"{self!r} has no input edge {index}")
        return self._backward(index, grad, *self.input_values())

    def _forward(self, *inputs: Tensor) -> Tensor:
        raise NotImplementedError("Operation forward requires implementation")

    def _backward(self, index: int, grad: Tensor, *inputs: Tensor) -> Tensor:
        raise InvalidOperation(f"{type(self).__name__} has no local gradient")
