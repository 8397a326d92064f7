from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class Record:
    id: str
    vector: List[float]
    input: str
    result: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchHit:
    distance: float
    id: str
    result: str
    data: Dict[str, Any] = field(default_factory=dict)
    input: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distance": self.distance,
            "id": self.id,
            "result": self.result,
            "data": self.data,
            "input": self.input,
        }
