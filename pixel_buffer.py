"""
ピクセルバッファ
RGBAラスター（行優先・左上原点）と共通エラー定義
"""
import math
import numpy as np
from typing import NamedTuple, Tuple


class ImageDecodeError(ValueError):
    """画像をラスター化できない（部分結果は返さない）"""


class StructuralViolation(LookupError):
    """レイヤー列に存在しないオブジェクトへの操作など（呼び出し元へ報告のみ）"""


class Color3(NamedTuple):
    """RGB色（アルファなし）"""
    r: int
    g: int
    b: int

    @classmethod
    def clamped(cls, r: float, g: float, b: float) -> 'Color3':
        """0-255に丸めて生成"""
        return cls(*(int(max(0, min(255, round(v)))) for v in (r, g, b)))

    def distance(self, other: 'Color3') -> float:
        """RGB空間のユークリッド距離"""
        return math.sqrt(
            (self.r - other.r) ** 2 +
            (self.g - other.g) ** 2 +
            (self.b - other.b) ** 2
        )

    def manhattan(self, other: 'Color3') -> int:
        """RGB空間のマンハッタン距離"""
        return abs(self.r - other.r) + abs(self.g - other.g) + abs(self.b - other.b)


class PixelBuffer:
    """RGBA画像バッファ（uint8, shape=(H, W, 4)）

    所有権は変換中のコンポーネントにある。共有したい場合は copy() を使う。
    """

    def __init__(self, data: np.ndarray):
        if data.ndim != 3 or data.shape[2] != 4:
            raise ImageDecodeError(f"Expected (H, W, 4) RGBA array, got {data.shape}")
        if data.dtype != np.uint8:
            raise ImageDecodeError(f"Expected uint8 samples, got {data.dtype}")
        self.data = data

    @classmethod
    def from_rgba(cls, rgba: np.ndarray) -> 'PixelBuffer':
        """RGBA配列から生成（コピーする）"""
        return cls(np.ascontiguousarray(rgba, dtype=np.uint8).copy())

    @classmethod
    def from_bgra(cls, bgra: np.ndarray) -> 'PixelBuffer':
        """OpenCVのBGRA配列から生成"""
        if bgra.ndim != 3 or bgra.shape[2] != 4:
            raise ImageDecodeError(f"Expected (H, W, 4) BGRA array, got {bgra.shape}")
        return cls(np.ascontiguousarray(bgra[:, :, [2, 1, 0, 3]], dtype=np.uint8))

    @classmethod
    def from_bytes(cls, width: int, height: int, buf: bytes) -> 'PixelBuffer':
        """4*W*H バイトのフラット列から生成"""
        expected = 4 * width * height
        if width <= 0 or height <= 0 or len(buf) != expected:
            raise ImageDecodeError(
                f"Buffer length {len(buf)} does not match {width}x{height} RGBA ({expected})"
            )
        arr = np.frombuffer(bytes(buf), dtype=np.uint8).reshape((height, width, 4))
        return cls(arr.copy())

    @classmethod
    def blank(cls, width: int, height: int,
              color: Tuple[int, int, int, int] = (0, 0, 0, 0)) -> 'PixelBuffer':
        """単色バッファを生成"""
        data = np.empty((height, width, 4), dtype=np.uint8)
        data[:, :] = color
        return cls(data)

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def size(self) -> Tuple[int, int]:
        """(w, h)"""
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.data[:, :, :3]

    @property
    def alpha(self) -> np.ndarray:
        return self.data[:, :, 3]

    def pixel(self, x: int, y: int) -> Tuple[int, int, int, int]:
        r, g, b, a = self.data[y, x]
        return int(r), int(g), int(b), int(a)

    def to_bgra(self) -> np.ndarray:
        """OpenCV保存用のBGRA配列"""
        return np.ascontiguousarray(self.data[:, :, [2, 1, 0, 3]])

    def to_bytes(self) -> bytes:
        return self.data.tobytes()

    def copy(self) -> 'PixelBuffer':
        return PixelBuffer(self.data.copy())

    def __eq__(self, other) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return self.data.shape == other.data.shape and np.array_equal(self.data, other.data)

    def __repr__(self) -> str:
        return f"PixelBuffer({self.width}x{self.height})"
