"""
エッジリファイナー
切り抜き画像の縁に残った色かぶり・ジャギーを3パスで整える

1. clean_edge_artifacts: 半透明の縁を周囲の不透明色で置き換え、薄いものは消す
2. smooth_edges: 半透明ピクセルを距離重み付き平均でならす
3. feather_edges: 不透明領域からの距離でアルファを減衰

各パスは入力を読み取り専用で扱い、新しい配列を返す（ダブルバッファ）。
"""
import logging
import math
import numpy as np
from dataclasses import dataclass

from pixel_buffer import PixelBuffer
from cv2_utils import load_image_as_rgba, save_image

logger = logging.getLogger(__name__)

SOLID_NEIGHBOR_ALPHA = 200  # これを超える近傍を「主体」として色を採る


@dataclass
class RefineConfig:
    """エッジ処理設定"""
    threshold: int = 30          # エッジ判定しきい値 (0-255)
    smooth_radius: int = 2       # 平滑化半径（px）
    color_tolerance: int = 20    # 色差の許容値 (0-255)
    feather_width: int = 3       # フェザー幅（px、0以下で無効）

    def __post_init__(self):
        clamped = (
            max(0, min(255, int(self.threshold))),
            max(0, min(16, int(self.smooth_radius))),
            max(0, min(255, int(self.color_tolerance))),
            max(0, min(32, int(self.feather_width))),
        )
        original = (self.threshold, self.smooth_radius, self.color_tolerance, self.feather_width)
        if clamped != original:
            logger.warning("RefineConfig clamped: %s -> %s", original, clamped)
        self.threshold, self.smooth_radius, self.color_tolerance, self.feather_width = clamped


def _shift(arr: np.ndarray, dx: int, dy: int, fill=0) -> np.ndarray:
    """out[y, x] = arr[y + dy, x + dx]（範囲外はfill）"""
    h, w = arr.shape[:2]
    out = np.full_like(arr, fill)
    if abs(dx) >= w or abs(dy) >= h:
        return out
    src_y = slice(max(0, dy), h + min(0, dy))
    src_x = slice(max(0, dx), w + min(0, dx))
    dst_y = slice(max(0, -dy), h + min(0, -dy))
    dst_x = slice(max(0, -dx), w + min(0, -dx))
    out[dst_y, dst_x] = arr[src_y, src_x]
    return out


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def clean_edge_artifacts(rgba: np.ndarray, threshold: int = 30,
                         color_tolerance: int = 20) -> np.ndarray:
    """パス1: 縁の色ノイズ除去

    0 < alpha < 255 - threshold のピクセルを縁とみなし、
    8近傍のうち縁でなく alpha > 200 のピクセルの平均色との
    マンハッタン距離が 3 * color_tolerance を超えたらRGBを置き換える。
    alpha < threshold の縁ピクセルは完全透明にする。

    書き換わるのは縁ピクセルだけで、参照するのは縁でない近傍だけなので、
    行優先の逐次走査とスナップショット処理は同じ結果になる。
    """
    out = rgba.copy()
    alpha = rgba[:, :, 3].astype(np.int32)
    edge = (alpha > 0) & (alpha < 255 - threshold)
    if not edge.any():
        return out

    solid = ~edge & (alpha > SOLID_NEIGHBOR_ALPHA)
    rgb = rgba[:, :, :3].astype(np.int64)

    sums = np.zeros(rgb.shape, dtype=np.int64)
    counts = np.zeros(alpha.shape, dtype=np.int64)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dx == 0 and dy == 0:
                continue
            neighbor_solid = _shift(solid, dx, dy, False)
            sums += _shift(rgb, dx, dy, 0) * neighbor_solid[:, :, None]
            counts += neighbor_solid

    has_solid = edge & (counts > 0)
    avg = _round_half_up(sums / np.maximum(counts, 1)[:, :, None]).astype(np.int64)
    diff = np.abs(rgb - avg).sum(axis=2)

    replace = has_solid & (diff > color_tolerance * 3)
    out[replace, :3] = avg[replace].astype(np.uint8)

    vanish = edge & (alpha < threshold)
    out[vanish, 3] = 0

    logger.debug(
        "Edge cleanup: %d edge px, %d recolored, %d cleared",
        int(edge.sum()), int(replace.sum()), int(vanish.sum())
    )
    return out


def smooth_edges(rgba: np.ndarray, radius: int = 2) -> np.ndarray:
    """パス2: 半透明ピクセルの平滑化

    半径radiusの窓内（画像内のみ）で重み 1 / (1 + 距離) の加重平均を
    R, G, B, A それぞれに取る。完全不透明/完全透明は変更しない。
    """
    out = rgba.copy()
    alpha = rgba[:, :, 3]
    translucent = (alpha > 0) & (alpha < 255)
    if radius <= 0 or not translucent.any():
        return out

    src = rgba.astype(np.float64)
    inside = np.ones(alpha.shape, dtype=np.float64)
    acc = np.zeros(src.shape, dtype=np.float64)
    weight_sum = np.zeros(alpha.shape, dtype=np.float64)

    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            weight = 1.0 / (1.0 + math.sqrt(dx * dx + dy * dy))
            acc += _shift(src, dx, dy, 0.0) * weight
            weight_sum += _shift(inside, dx, dy, 0.0) * weight

    averaged = _round_half_up(acc / weight_sum[:, :, None])
    out[translucent] = np.clip(averaged[translucent], 0, 255).astype(np.uint8)

    logger.debug("Edge smoothing: %d translucent px (r=%d)", int(translucent.sum()), radius)
    return out


def distance_to_solid(alpha: np.ndarray, max_distance: int) -> np.ndarray:
    """各ピクセルから半径max_distanceの正方形窓内で最も近い alpha==255 までの距離

    見つからない場合は inf。
    """
    solid = alpha == 255
    best = np.full(alpha.shape, np.inf)
    for dy in range(-max_distance, max_distance + 1):
        for dx in range(-max_distance, max_distance + 1):
            d2 = float(dx * dx + dy * dy)
            hit = _shift(solid, dx, dy, False)
            best = np.where(hit, np.minimum(best, d2), best)
    return np.sqrt(best)


def feather_edges(rgba: np.ndarray, feather_width: int = 3) -> np.ndarray:
    """パス3: 縁のフェザリング

    alpha < 255 のピクセルについて、最も近い不透明ピクセルまでの距離dが
    feather_width 未満なら alpha * (1 - 0.5 * d / feather_width) にする。
    """
    out = rgba.copy()
    if feather_width <= 0:
        return out

    alpha = rgba[:, :, 3]
    distance = distance_to_solid(alpha, feather_width)
    target = (alpha < 255) & (distance < feather_width)
    if not target.any():
        return out

    ratio = distance[target] / feather_width
    feathered = _round_half_up(alpha[target].astype(np.float64) * (1 - ratio * 0.5))
    out[target, 3] = np.clip(feathered, 0, 255).astype(np.uint8)

    logger.debug("Edge feathering: %d px (w=%d)", int(target.sum()), feather_width)
    return out


class EdgeRefiner:
    """切り抜き画像の縁を整える（RGBA専用、ストレートアルファ）"""

    def __init__(self, config: RefineConfig = None):
        self.config = config or RefineConfig()

    def refine(self, image: PixelBuffer) -> PixelBuffer:
        """3パスを順に実行

        各パスは前パスの結果全体を入力にする。

        Args:
            image: 入力画像（変更しない）

        Returns:
            処理済み画像
        """
        cfg = self.config
        data = clean_edge_artifacts(image.data, cfg.threshold, cfg.color_tolerance)
        data = smooth_edges(data, cfg.smooth_radius)
        if cfg.feather_width > 0:
            data = feather_edges(data, cfg.feather_width)
        return PixelBuffer(data)


def refine(image: PixelBuffer, threshold: int = 30, smooth_radius: int = 2,
           color_tolerance: int = 20, feather_width: int = 3) -> PixelBuffer:
    """EdgeRefinerの簡易呼び出し"""
    config = RefineConfig(
        threshold=threshold,
        smooth_radius=smooth_radius,
        color_tolerance=color_tolerance,
        feather_width=feather_width,
    )
    return EdgeRefiner(config).refine(image)


def refine_file(src_path: str, dst_path: str, config: RefineConfig = None) -> bool:
    """ファイルを読み込んで縁を整え、PNGで保存"""
    image = load_image_as_rgba(src_path)
    return save_image(dst_path, EdgeRefiner(config).refine(image))
