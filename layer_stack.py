"""
レイヤースタック
キャンバスオブジェクトを内容カテゴリごとのZ帯に分けて並び順を保つ

並び順は列上の位置だけで表す（index 0 が最背面）。
Z帯の境界は毎回列から導出し、インデックスをキャッシュしない。
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from typing import Iterator, List, Optional, Protocol, Tuple, Union

from pixel_buffer import PixelBuffer, StructuralViolation

logger = logging.getLogger(__name__)

BAND_SIZE = 100  # 1タイプあたりのZスロット数


class LayerType(str, Enum):
    """レイヤーの内容カテゴリ（定義順が奥→手前）"""
    SCENE = 'scene'
    CHARACTER = 'character'
    PROP = 'prop'
    EFFECT = 'effect'
    COMPOSITE = 'composite'

    @classmethod
    def parse(cls, value: Union['LayerType', str, None]) -> 'LayerType':
        """タグを解釈。不明なものはPROP扱い"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.PROP

    @property
    def band(self) -> int:
        return _BAND_ORDER.index(self)


_BAND_ORDER: List[LayerType] = list(LayerType)


def band_range(layer_type: Union[LayerType, str]) -> range:
    """タイプが占有するZ帯 [base, base + BAND_SIZE)"""
    base = LayerType.parse(layer_type).band * BAND_SIZE
    return range(base, base + BAND_SIZE)


_record_ids = count(1)


@dataclass(eq=False)
class LayerRecord:
    """キャンバス上の描画オブジェクト

    layer_type はホスト側が文字列で書き換えてもよい（読み取り時に解釈する）。
    selectable=False かつ evented=False のものはフレームとして扱う。
    """
    name: str = ''
    layer_type: Union[LayerType, str] = LayerType.PROP
    selectable: bool = True
    evented: bool = True
    image: Optional[PixelBuffer] = None
    x: int = 0
    y: int = 0
    id: int = field(default_factory=lambda: next(_record_ids))

    @property
    def kind(self) -> LayerType:
        return LayerType.parse(self.layer_type)

    @property
    def is_frame(self) -> bool:
        return not self.selectable and not self.evented

    @classmethod
    def frame(cls, name: str = 'frame', image: Optional[PixelBuffer] = None) -> 'LayerRecord':
        return cls(name=name, layer_type=LayerType.SCENE, selectable=False, evented=False, image=image)

    def __repr__(self) -> str:
        tag = 'frame' if self.is_frame else self.kind.value
        return f"LayerRecord({self.name!r}, {tag}, id={self.id})"


class Classifier(Protocol):
    """分類（外部）: 切り抜き画像から 'character' / 'prop' / 'scene' を返す"""

    def classify(self, image: PixelBuffer) -> str:
        ...


class LayerStack:
    """タイプ別Z帯つきのオブジェクト列

    構造変更は1度に1操作（呼び出し側で直列化する）。
    存在しないオブジェクトへの操作は何もせずFalseを返し、
    理由を last_violation に残す。
    """

    def __init__(self, objects: Optional[List[LayerRecord]] = None):
        self._objects: List[LayerRecord] = list(objects or [])
        self.last_violation: Optional[StructuralViolation] = None

    # === 参照 ===

    def __len__(self) -> int:
        return len(self._objects)

    def __iter__(self) -> Iterator[LayerRecord]:
        return iter(list(self._objects))

    def __contains__(self, obj) -> bool:
        return self.index_of(obj) >= 0

    def objects(self) -> List[LayerRecord]:
        """現在の並び（コピー、index 0 が最背面）"""
        return list(self._objects)

    def index_of(self, obj: LayerRecord) -> int:
        for i, current in enumerate(self._objects):
            if current is obj:
                return i
        return -1

    @property
    def frame(self) -> Optional[LayerRecord]:
        for obj in self._objects:
            if obj.is_frame:
                return obj
        return None

    def _first_regular_index(self) -> int:
        return 1 if self._objects and self._objects[0].is_frame else 0

    def same_type_positions(self, layer_type: Union[LayerType, str]) -> List[int]:
        """同じタイプ（フレーム除く）の位置を列順で返す"""
        kind = LayerType.parse(layer_type)
        return [i for i, o in enumerate(self._objects) if not o.is_frame and o.kind is kind]

    def band_bounds(self, layer_type: Union[LayerType, str]) -> Tuple[int, int]:
        """整列済みの列でタイプが占める位置 [start, stop)

        該当オブジェクトがなければ start == stop（挿入位置）。
        """
        band = LayerType.parse(layer_type).band
        start = self._first_regular_index()
        for obj in self._objects[start:]:
            if obj.kind.band >= band:
                break
            start += 1
        stop = start
        for obj in self._objects[start:]:
            if obj.kind.band > band:
                break
            stop += 1
        return start, stop

    def z_index(self, obj: LayerRecord) -> int:
        """Z帯の基準値 + タイプ内の順位（フレームは -1）"""
        if obj.is_frame:
            return -1
        positions = self.same_type_positions(obj.kind)
        idx = self.index_of(obj)
        if idx not in positions:
            return -1
        rank = min(positions.index(idx), BAND_SIZE - 1)
        return band_range(obj.kind).start + rank

    def is_sorted(self) -> bool:
        """フレームが先頭、以降がZ帯順に並んでいるか"""
        start = self._first_regular_index()
        regular = self._objects[start:]
        if any(o.is_frame for o in regular):
            return False
        bands = [o.kind.band for o in regular]
        return all(a <= b for a, b in zip(bands, bands[1:]))

    def _violation(self, message: str) -> bool:
        self.last_violation = StructuralViolation(message)
        logger.warning("Layer stack: %s", message)
        return False

    # === 構造変更 ===

    def insert(self, obj: LayerRecord, layer_type: Union[LayerType, str, None] = None) -> bool:
        """タイプに応じた位置に挿入

        同タイプの並びの直後、より手前の帯の最初のオブジェクトの直前に入る。
        フレームは常に先頭。
        """
        if self.index_of(obj) >= 0:
            return self._violation(f"{obj!r} is already in the stack")

        if obj.is_frame:
            if self.frame is not None:
                return self._violation(f"frame already present, cannot insert {obj!r}")
            self._objects.insert(0, obj)
            self.last_violation = None
            return True

        if layer_type is not None:
            obj.layer_type = LayerType.parse(layer_type)

        band = obj.kind.band
        insert_index = self._first_regular_index()
        for i in range(insert_index, len(self._objects)):
            if self._objects[i].kind.band <= band:
                insert_index = i + 1
            else:
                break

        self._objects.insert(insert_index, obj)
        self.last_violation = None
        logger.debug("Inserted %r at %d", obj, insert_index)
        return True

    def insert_classified(self, obj: LayerRecord, classifier: Classifier) -> bool:
        """分類結果のタイプで挿入（分類に失敗したらprop）"""
        kind = LayerType.PROP
        if obj.image is not None:
            try:
                kind = LayerType.parse(classifier.classify(obj.image))
            except Exception as e:
                logger.warning("Classification failed for %r, using prop: %s", obj, e)
        return self.insert(obj, kind)

    def remove(self, obj: LayerRecord) -> bool:
        idx = self.index_of(obj)
        if idx < 0:
            return self._violation(f"{obj!r} is not in the stack")
        del self._objects[idx]
        self.last_violation = None
        return True

    def move_within_type(self, obj: LayerRecord, direction: str) -> bool:
        """同タイプ内で1つ手前（up）/奥（down）へ

        同タイプの並びの中で入れ替えるだけなので、他タイプとの前後関係は変わらない。
        端にいる場合は何もしない（Trueを返す）。
        """
        if direction not in ('up', 'down'):
            return self._violation(f"unknown direction {direction!r}")
        idx = self.index_of(obj)
        if idx < 0:
            return self._violation(f"{obj!r} is not in the stack")
        if obj.is_frame:
            return self._violation("frame cannot be reordered")

        positions = self.same_type_positions(obj.kind)
        k = positions.index(idx)
        other = k + 1 if direction == 'up' else k - 1
        self.last_violation = None
        if other < 0 or other >= len(positions):
            return True

        j = positions[other]
        self._objects[idx], self._objects[j] = self._objects[j], self._objects[idx]
        return True

    def move_to_edge_within_type(self, obj: LayerRecord, edge: str) -> bool:
        """同タイプ内の最前面（top）/最背面（bottom）へ

        同タイプが占めている位置の集合は変えず、その中で並べ替える。
        """
        if edge not in ('top', 'bottom'):
            return self._violation(f"unknown edge {edge!r}")
        idx = self.index_of(obj)
        if idx < 0:
            return self._violation(f"{obj!r} is not in the stack")
        if obj.is_frame:
            return self._violation("frame cannot be reordered")

        positions = self.same_type_positions(obj.kind)
        members = [self._objects[p] for p in positions if p != idx]
        if edge == 'top':
            members.append(obj)
        else:
            members.insert(0, obj)
        for p, member in zip(positions, members):
            self._objects[p] = member
        self.last_violation = None
        return True

    def resort_all(self) -> None:
        """全体を安定ソートし直す（フレーム先頭、以降Z帯順）"""
        frame = None
        buckets = {kind: [] for kind in _BAND_ORDER}
        for obj in self._objects:
            if obj.is_frame and frame is None:
                frame = obj
            else:
                # 2つ目以降のフレームは通常オブジェクトとして扱う
                buckets[obj.kind].append(obj)

        ordered = [frame] if frame is not None else []
        for kind in _BAND_ORDER:
            ordered.extend(buckets[kind])
        self._objects = ordered
