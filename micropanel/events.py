from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Rotate:
    steps: int

    @property
    def direction(self) -> int:
        return (self.steps > 0) - (self.steps < 0)


@dataclass(frozen=True)
class Button:
    pass


InputEvent = Union[Rotate, Button]
