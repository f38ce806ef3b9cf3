"""
切り抜きパイプライン
背景キー / カテゴリマスク → エッジ処理 → レイヤー配置
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from pixel_buffer import PixelBuffer
from background_keyer import BackgroundKeyer, KeyerConfig
from mask_transform import CategoryMask, composite_mask
from edge_refiner import EdgeRefiner, RefineConfig
from layer_stack import Classifier, LayerRecord, LayerStack, LayerType

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """パイプライン設定"""
    remove_background: bool = False
    keyer: KeyerConfig = field(default_factory=KeyerConfig)

    dilation: int = 0       # マスク膨張回数
    feather: int = 0        # マスクのフェザー半径

    refine_edges: bool = True
    refine: RefineConfig = field(default_factory=RefineConfig)

    def __post_init__(self):
        self.dilation = max(0, int(self.dilation))
        self.feather = max(0, int(self.feather))


class MattePipeline:
    """切り抜き処理の一連の流れ"""

    def __init__(self, config: PipelineConfig = None):
        self.config = config or PipelineConfig()
        self.keyer = BackgroundKeyer(self.config.keyer)
        self.refiner = EdgeRefiner(self.config.refine)

    def run(self, image: PixelBuffer, mask: Optional[CategoryMask] = None) -> PixelBuffer:
        """切り抜きを作る

        Args:
            image: 入力画像（変更しない）
            mask: 外部セグメンテーションのマスク（任意）

        Returns:
            切り抜き画像
        """
        result = image
        if mask is not None:
            result = composite_mask(result, mask, self.config.dilation, self.config.feather)
        if self.config.remove_background:
            result = self.keyer.detect_and_remove_background(result)
        if self.config.refine_edges:
            result = self.refiner.refine(result)
        if result is image:
            result = image.copy()
        return result

    def place(self, stack: LayerStack, cutout: PixelBuffer, name: str = '',
              classifier: Optional[Classifier] = None,
              layer_type: Union[LayerType, str, None] = None,
              x: int = 0, y: int = 0) -> LayerRecord:
        """切り抜きをレイヤーとしてスタックに追加

        タイプ指定がなければ分類器に任せ、分類器もなければprop。
        """
        record = LayerRecord(name=name, image=cutout, x=x, y=y)
        if layer_type is not None:
            stack.insert(record, layer_type)
        elif classifier is not None:
            stack.insert_classified(record, classifier)
        else:
            stack.insert(record, LayerType.PROP)
        logger.info("Placed %r at z=%d", record, stack.z_index(record))
        return record
