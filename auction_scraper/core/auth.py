from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    HUMAN = "human"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
