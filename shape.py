"""
    Shape of a rank-5 tensor.

    The axes are always (sample, frame, width, height, channel).
    A placeholder may leave the sample count open with UNKNOWN,
    it has to be resolved before any buffer is allocated.
"""

from typing import List, TextIO, Tuple
import numpy as np

from errors import InvalidIndex, ShapeMismatch


RANK = 5
UNKNOWN = -1
AXES = ("sample", "frame", "width", "height", "channel")


def check_axis(axis: int) -> int:
    if not isinstance(axis, (int, np.integer)) or not 0 <= axis < RANK:
        raise InvalidIndex(f"axis must be in [0, {RANK}), got {axis!r}")
    return int(axis)


def read_tokens(stream: TextIO, count: int) -> List[str]:
    """
        Reads up to count whitespace separated tokens, line breaks do not matter.

        The stream is left right after the last token, so several
        shapes and tensors can be read from one stream in a row.
    """
    tokens = []
    token = []
    while len(tokens) < count:
        ch = stream.read(1)
        if ch and not ch.isspace():
            token.append(ch)
            continue
        if token:
            tokens.append("".join(token))
            token = []
        if not ch:
            break
    return tokens


class Shape(tuple):
    """
        Immutable 5-tuple of extents.

        Shape(1, 1, 28, 28, 3) and Shape([1, 1, 28, 28, 3]) are equivalent.
        None at axis 0 is accepted as UNKNOWN.
    """
    def __new__(cls, *extents):
        if len(extents) == 1 and not isinstance(extents[0], (int, np.integer)) and extents[0] is not None:
            extents = tuple(extents[0])
        if len(extents) != RANK:
            raise ShapeMismatch(f"a shape has {RANK} extents, got {len(extents)}: {extents!r}")
        values = []
        for axis, e in enumerate(extents):
            e = UNKNOWN if e is None else int(e)
            if e < 0 and not (axis == 0 and e == UNKNOWN):
                raise ShapeMismatch(f"negative extent {e} on axis {AXES[axis]}")
            values.append(e)
        return super().__new__(cls, values)

    def __repr__(self):
        return "Shape(" + ", ".join(str(e) for e in self) + ")"

    def __str__(self):
        return " ".join(str(e) for e in self)

    # named axes
    @property
    def sample(self) -> int:
        return self[0]

    @property
    def frame(self) -> int:
        return self[1]

    @property
    def width(self) -> int:
        return self[2]

    @property
    def height(self) -> int:
        return self[3]

    @property
    def channel(self) -> int:
        return self[4]

    @property
    def is_resolved(self) -> bool:
        return self[0] != UNKNOWN

    @property
    def is_scalar(self) -> bool:
        return all(e == 1 for e in self)

    @property
    def size(self) -> int:  # number of elements
        if not self.is_resolved:
            raise ShapeMismatch(f"shape {self!r} has an unknown sample count")
        return int(np.prod(self, dtype=np.int64))

    def axis(self, i: int) -> int:
        return self[check_axis(i)]

    def set(self, axis: int, value: int) -> "Shape":
        extents = list(self)
        extents[check_axis(axis)] = value
        return Shape(extents)

    def resolve(self, n_samples: int) -> "Shape":
        return self.set(0, n_samples) if not self.is_resolved else self

    def flatten(self, axis: int = 2) -> "Shape":
        # the extents from axis onward are merged into axis
        axis = check_axis(axis)
        merged = int(np.prod(self[axis:], dtype=np.int64))
        return Shape(list(self[:axis]) + [merged] + [1] * (RANK - axis - 1))

    def sub2ind(self, *subs: int) -> int:
        if len(subs) != RANK:
            raise InvalidIndex(f"expected {RANK} subscripts, got {len(subs)}")
        idx = 0
        for axis, (s, e) in enumerate(zip(subs, self)):
            if not 0 <= s < e:
                raise InvalidIndex(f"subscript {s} out of range [0, {e}) on axis {AXES[axis]}")
            idx = idx * e + s
        return idx

    def ind2sub(self, idx: int) -> Tuple[int, int, int, int, int]:
        if not 0 <= idx < self.size:
            raise InvalidIndex(f"linear index {idx} out of range [0, {self.size})")
        subs = [0] * RANK
        for axis in reversed(range(RANK)):
            idx, subs[axis] = divmod(idx, self[axis])
        return tuple(subs)

    def broadcast(self, other: "Shape") -> "Shape":
        """
            Result shape of an element-wise operation.

            Only the first differing axis may broadcast, and the operand
            holding extent 1 on that axis is the one being repeated.
            A single element shape (1, 1, 1, 1, 1) acts as a scalar.
        """
        other = Shape(other)
        differing = [i for i in range(RANK) if self[i] != other[i]]
        if not differing:
            return self
        if other.is_scalar:
            return self
        if self.is_scalar:
            return other
        if len(differing) > 1:
            raise ShapeMismatch(f"cannot broadcast {self!r} with {other!r}: axes {differing} differ")
        axis = differing[0]
        if self[axis] != 1 and other[axis] != 1:
            raise ShapeMismatch(f"cannot broadcast {self!r} with {other!r} on axis {AXES[axis]}")
        return self if other[axis] == 1 else other

    def accepts(self, other: "Shape") -> bool:
        # declared (placeholder) shape against a concrete one
        return all(d == UNKNOWN or d == e for d, e in zip(self, other))

    # stream input/output
    def dump(self, stream: TextIO):
        stream.write(str(self) + "\n")

    @classmethod
    def load(cls, stream: TextIO) -> "Shape":
        tokens = read_tokens(stream, RANK)
        if len(tokens) != RANK:
            raise ShapeMismatch(f"stream ended after {len(tokens)} of {RANK} extents")
        return cls(int(token) for token in tokens)
