"""
マスク変換
カテゴリマスクの膨張・距離ベースのフェザリング・画像への適用

カテゴリマスクは画像より低解像度のことが多い。リサイズはせず、
画像座標から比例計算した最近傍セルを参照する。
"""
import logging
import math
import cv2
import numpy as np
from typing import Optional, Protocol, Tuple

from pixel_buffer import PixelBuffer

logger = logging.getLogger(__name__)

# セグメンテーション結果の「選択オブジェクト」ラベル
OBJECT_LABEL = 0
BACKGROUND_LABEL = 1

_KERNEL_8 = np.ones((3, 3), dtype=np.uint8)


class CategoryMask:
    """ラベルグリッド（2D uint8）。画像とは独立したサイズを持つ"""

    def __init__(self, labels: np.ndarray, object_label: int = OBJECT_LABEL):
        labels = np.asarray(labels)
        if labels.ndim != 2:
            raise ValueError(f"Category mask must be 2D, got shape {labels.shape}")
        self.labels = labels.astype(np.uint8, copy=False)
        self.object_label = object_label

    @classmethod
    def from_binary(cls, mask: np.ndarray) -> 'CategoryMask':
        """0/255（またはbool）マスクから生成。非ゼロ=オブジェクト"""
        mask = np.asarray(mask)
        labels = np.where(mask > 0, OBJECT_LABEL, BACKGROUND_LABEL).astype(np.uint8)
        return cls(labels)

    @property
    def width(self) -> int:
        return self.labels.shape[1]

    @property
    def height(self) -> int:
        return self.labels.shape[0]

    @property
    def is_object(self) -> np.ndarray:
        return self.labels == self.object_label

    def object_count(self) -> int:
        return int(self.is_object.sum())

    def copy(self) -> 'CategoryMask':
        return CategoryMask(self.labels.copy(), self.object_label)

    def __eq__(self, other) -> bool:
        if not isinstance(other, CategoryMask):
            return NotImplemented
        return (self.object_label == other.object_label and
                np.array_equal(self.labels, other.labels))

    def __repr__(self) -> str:
        return f"CategoryMask({self.width}x{self.height}, objects={self.object_count()})"


class Segmenter(Protocol):
    """セグメンテーション（外部）: 指定点のオブジェクトをマスクで返す"""

    def segment(self, image: PixelBuffer, x: int, y: int) -> CategoryMask:
        ...


def dilate(mask: CategoryMask, iterations: int) -> CategoryMask:
    """オブジェクト領域を8近傍で膨張

    各反復は前の反復結果のコピー全体を読むため、走査順に依存しない。

    Args:
        mask: 入力マスク（変更しない）
        iterations: 反復回数（0以下は入力と同じマスク）

    Returns:
        新しいCategoryMask
    """
    if iterations <= 0:
        return mask.copy()

    obj = mask.is_object.astype(np.uint8)
    grown = cv2.dilate(obj, _KERNEL_8, iterations=int(iterations))

    labels = mask.labels.copy()
    labels[grown > 0] = mask.object_label
    return CategoryMask(labels, mask.object_label)


def feathered_alpha(mask: CategoryMask, x: int, y: int, radius: int) -> int:
    """1セル分のフェザー値（マスク座標）

    半径radiusの正方形窓で最も近いオブジェクトセルを探し、
    floor(255 * min(d, radius) / radius) を返す。
    オブジェクトセル自身は0、窓内にオブジェクトがなければ255。
    """
    radius = max(1, int(radius))
    is_object = mask.is_object
    h, w = is_object.shape

    y1, y2 = max(0, y - radius), min(h, y + radius + 1)
    x1, x2 = max(0, x - radius), min(w, x + radius + 1)
    ys, xs = np.nonzero(is_object[y1:y2, x1:x2])
    if ys.size == 0:
        return 255

    d2 = (ys + y1 - y) ** 2 + (xs + x1 - x) ** 2
    distance = math.sqrt(int(d2.min()))
    return int(math.floor(255 * min(distance, radius) / radius))


def feather_map(mask: CategoryMask, radius: int) -> np.ndarray:
    """全セルのフェザー値 (H, W) uint8

    正方形窓の探索はmin(d, radius)で打ち切られるため、
    全域の最近傍距離（厳密なL2距離変換）と同じ結果になる。
    """
    radius = max(1, int(radius))
    # オブジェクトセル=0、それ以外=1 → 各セルから最寄りの0までの距離
    src = np.where(mask.is_object, 0, 1).astype(np.uint8)
    if not src.any():
        return np.zeros(src.shape, dtype=np.uint8)
    if src.all():
        return np.full(src.shape, 255, dtype=np.uint8)

    distance = cv2.distanceTransform(src, cv2.DIST_L2, cv2.DIST_MASK_PRECISE)
    ratio = np.minimum(distance.astype(np.float64), radius) / radius
    return np.floor(255 * ratio).astype(np.uint8)


def map_to_image(mask: CategoryMask, width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
    """画像座標→マスク座標の最近傍インデックス (rows, cols)"""
    rows = (np.arange(height) * mask.height) // height
    cols = (np.arange(width) * mask.width) // width
    return rows, cols


def resample(values: np.ndarray, mask: CategoryMask, width: int, height: int) -> np.ndarray:
    """マスク解像度の値を画像解像度に最近傍で写像"""
    rows, cols = map_to_image(mask, width, height)
    return values[rows[:, None], cols[None, :]]


def composite_mask(image: PixelBuffer, mask: CategoryMask,
                   dilation: int = 0, feather: int = 0) -> PixelBuffer:
    """マスクを画像のアルファに適用

    Args:
        image: 入力画像（変更しない）
        mask: カテゴリマスク（サイズは画像と異なってよい）
        dilation: 膨張の反復回数（0で無効）
        feather: フェザー半径（マスクセル単位、0で無効）

    Returns:
        アルファのみ置き換えた画像（RGBは不変）
    """
    if mask.width == 0 or mask.height == 0:
        raise ValueError("Category mask is empty")

    if (mask.width, mask.height) != (image.width, image.height):
        logger.debug(
            "Resampling %dx%d mask onto %dx%d image",
            mask.width, mask.height, image.width, image.height
        )

    if dilation > 0:
        mask = dilate(mask, dilation)

    if feather > 0:
        cell_alpha = 255 - feather_map(mask, feather)
    else:
        cell_alpha = np.where(mask.is_object, 255, 0).astype(np.uint8)

    result = image.copy()
    result.alpha[:, :] = resample(cell_alpha, mask, image.width, image.height)
    return result


def mask_overlay(mask: CategoryMask, width: int, height: int,
                 color: Tuple[int, int, int, int] = (0, 255, 255, 76)) -> PixelBuffer:
    """オブジェクト領域をハイライトするRGBAオーバーレイ"""
    overlay = np.zeros((height, width, 4), dtype=np.uint8)
    selected = resample(mask.is_object, mask, width, height)
    overlay[selected] = color
    return PixelBuffer(overlay)


def cutout_at_point(image: PixelBuffer, segmenter: Segmenter, x: int, y: int,
                    dilation: int = 0, feather: int = 0) -> Optional[PixelBuffer]:
    """指定点のオブジェクトを切り抜く

    セグメンテーション結果にオブジェクトがなければNone。
    """
    mask = segmenter.segment(image, x, y)
    if mask is None or mask.object_count() == 0:
        logger.info("No object found at (%d, %d)", x, y)
        return None
    return composite_mask(image, mask, dilation=dilation, feather=feather)
