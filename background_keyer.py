"""
背景キーヤー
四隅のサンプルから背景色を推定し、近い色のピクセルを透明化する
"""
import logging
import numpy as np
from dataclasses import dataclass
from typing import Tuple

from pixel_buffer import PixelBuffer, Color3
from cv2_utils import load_image_as_rgba

logger = logging.getLogger(__name__)

# RGB空間の最大距離 sqrt(3 * 255^2)
MAX_RGB_DISTANCE = 441.68


@dataclass
class KeyerConfig:
    """背景キー設定"""
    sample_size: int = 10       # 四隅のサンプル領域（px四方）
    tolerance: float = 40.0     # 背景色とのユークリッド距離しきい値

    def __post_init__(self):
        sample_size = max(1, int(self.sample_size))
        tolerance = max(0.0, min(MAX_RGB_DISTANCE, float(self.tolerance)))
        if sample_size != self.sample_size or tolerance != self.tolerance:
            logger.warning(
                "KeyerConfig clamped: sample_size %s -> %d, tolerance %s -> %.1f",
                self.sample_size, sample_size, self.tolerance, tolerance
            )
        self.sample_size = sample_size
        self.tolerance = tolerance


class BackgroundKeyer:
    """単色背景の自動除去（RGBA専用、RGBは変更しない）"""

    def __init__(self, config: KeyerConfig = None):
        self.config = config or KeyerConfig()

    def _corner_samples(self, image: PixelBuffer) -> np.ndarray:
        """四隅のRGBサンプルを (N, 3) で返す

        画像がサンプル領域より小さい場合は範囲内に丸める。
        """
        h, w = image.height, image.width
        sw = min(self.config.sample_size, w)
        sh = min(self.config.sample_size, h)
        rgb = image.rgb
        corners = [
            rgb[0:sh, 0:sw],            # 左上
            rgb[0:sh, w - sw:w],        # 右上
            rgb[h - sh:h, 0:sw],        # 左下
            rgb[h - sh:h, w - sw:w],    # 右下
        ]
        return np.concatenate([c.reshape(-1, 3) for c in corners], axis=0)

    def _estimate_mean(self, image: PixelBuffer) -> np.ndarray:
        samples = self._corner_samples(image).astype(np.float64)
        return samples.mean(axis=0)

    def estimate_background(self, image: PixelBuffer) -> Color3:
        """四隅の平均色を背景色として推定（アルファは無視）"""
        return Color3.clamped(*self._estimate_mean(image))

    def background_distance(self, image: PixelBuffer) -> np.ndarray:
        """各ピクセルと推定背景色とのユークリッド距離 (H, W)"""
        mean = self._estimate_mean(image)
        diff = image.rgb.astype(np.float64) - mean
        return np.sqrt((diff ** 2).sum(axis=2))

    def detect_and_remove_background(self, image: PixelBuffer) -> PixelBuffer:
        """背景色に近いピクセルのアルファを0にする

        Args:
            image: 入力画像（変更しない）

        Returns:
            同サイズの画像（アルファのみ変更）
        """
        if image.width == 0 or image.height == 0:
            return image.copy()

        result = image.copy()
        distance = self.background_distance(image)

        # 既に透明なピクセルは判定しない（冪等性）
        keyed = (distance < self.config.tolerance) & (result.alpha > 0)
        result.alpha[keyed] = 0

        logger.debug(
            "Background keyed: %d/%d pixels (bg=%s, tol=%.1f)",
            int(keyed.sum()), keyed.size,
            self.estimate_background(image), self.config.tolerance
        )
        return result


def detect_and_remove_background(image: PixelBuffer, tolerance: float = 40.0,
                                 sample_size: int = 10) -> PixelBuffer:
    """BackgroundKeyerの簡易呼び出し"""
    keyer = BackgroundKeyer(KeyerConfig(sample_size=sample_size, tolerance=tolerance))
    return keyer.detect_and_remove_background(image)


def detect_and_remove_background_file(path: str, config: KeyerConfig = None) -> PixelBuffer:
    """ファイルから読み込んで背景除去（デコード失敗はImageDecodeError）"""
    image = load_image_as_rgba(path)
    return BackgroundKeyer(config).detect_and_remove_background(image)


def remove_color(image: PixelBuffer, color: Tuple[int, int, int] = (255, 0, 255),
                 tolerance: int = 30) -> PixelBuffer:
    """指定色（既定はマゼンタ）をクロマキーで透明化

    各チャンネルの差がすべて tolerance 未満のピクセルを透明にする。
    """
    tolerance = max(0, min(256, int(tolerance)))
    result = image.copy()
    key = np.array(color, dtype=np.int16)
    diff = np.abs(image.rgb.astype(np.int16) - key)
    keyed = (diff < tolerance).all(axis=2)
    result.alpha[keyed] = 0
    return result
