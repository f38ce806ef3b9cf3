"""
LayerStack のテスト（Z帯つきの挿入・並べ替え）
"""
import itertools
import random

import pytest

from pixel_buffer import PixelBuffer, StructuralViolation
from layer_stack import (
    BAND_SIZE, LayerRecord, LayerStack, LayerType, band_range
)


def names(stack):
    return [o.name for o in stack.objects()]


def band_signature(stack):
    """(名前, タイプ) の並び。フレームは除く"""
    return [(o.name, o.kind) for o in stack.objects() if not o.is_frame]


class TestLayerType:

    def test_parse_known_and_unknown(self):
        assert LayerType.parse('scene') is LayerType.SCENE
        assert LayerType.parse('Character ') is LayerType.CHARACTER
        assert LayerType.parse(LayerType.EFFECT) is LayerType.EFFECT
        assert LayerType.parse('background') is LayerType.PROP
        assert LayerType.parse(None) is LayerType.PROP

    def test_bands_are_disjoint_and_ordered(self):
        ranges = [band_range(kind) for kind in LayerType]
        for lower, upper in zip(ranges, ranges[1:]):
            assert lower.stop <= upper.start
        assert all(len(r) == BAND_SIZE for r in ranges)
        assert band_range('unknown') == band_range(LayerType.PROP)

    def test_frame_identity(self):
        assert LayerRecord.frame().is_frame
        assert not LayerRecord(selectable=False).is_frame
        assert not LayerRecord(evented=False).is_frame


class TestInsert:

    def test_frame_stays_first(self, populated_stack, frame):
        assert populated_stack.objects()[0] is frame
        populated_stack.insert(LayerRecord(name='bg'), LayerType.SCENE)
        assert populated_stack.objects()[0] is frame

    def test_sorted_after_inserts(self, populated_stack):
        assert names(populated_stack) == [
            'workframe', 'sky', 'hero', 'villain', 'sword', 'shield', 'spark'
        ]
        assert populated_stack.is_sorted()

    def test_scene_goes_before_props(self, frame):
        stack = LayerStack()
        stack.insert(frame)
        stack.insert(LayerRecord(name='old_scene'), 'scene')
        for i in range(3):
            stack.insert(LayerRecord(name=f'prop{i}'), 'prop')
        stack.insert(LayerRecord(name='new_scene'), 'scene')
        assert names(stack) == ['workframe', 'old_scene', 'new_scene', 'prop0', 'prop1', 'prop2']

    def test_insert_after_same_type_run(self, populated_stack):
        populated_stack.insert(LayerRecord(name='sidekick'), LayerType.CHARACTER)
        assert names(populated_stack)[2:5] == ['hero', 'villain', 'sidekick']

    def test_insert_into_empty_stack(self):
        stack = LayerStack()
        stack.insert(LayerRecord(name='only'), LayerType.EFFECT)
        assert names(stack) == ['only']

    def test_insert_below_everything_goes_after_frame(self, frame):
        stack = LayerStack()
        stack.insert(frame)
        stack.insert(LayerRecord(name='fx'), 'effect')
        stack.insert(LayerRecord(name='bg'), 'scene')
        assert names(stack) == ['workframe', 'bg', 'fx']

    def test_frame_inserted_later_goes_to_front(self):
        stack = LayerStack()
        stack.insert(LayerRecord(name='a'), 'prop')
        stack.insert(LayerRecord.frame('late_frame'))
        assert names(stack) == ['late_frame', 'a']

    def test_unknown_type_uses_prop_band(self, populated_stack):
        odd = LayerRecord(name='odd', layer_type='hologram')
        populated_stack.insert(odd)
        assert names(populated_stack)[4:7] == ['sword', 'shield', 'odd']
        assert odd.kind is LayerType.PROP

    def test_explicit_type_overrides_tag(self):
        obj = LayerRecord(name='x', layer_type='prop')
        stack = LayerStack()
        stack.insert(obj, 'character')
        assert obj.kind is LayerType.CHARACTER

    def test_duplicate_insert_is_rejected(self, populated_stack):
        hero = populated_stack.objects()[2]
        before = names(populated_stack)
        assert populated_stack.insert(hero) is False
        assert names(populated_stack) == before
        assert isinstance(populated_stack.last_violation, StructuralViolation)

    def test_second_frame_is_rejected(self, populated_stack):
        before = names(populated_stack)
        assert populated_stack.insert(LayerRecord.frame('another')) is False
        assert names(populated_stack) == before


class TestMoveWithinType:

    def test_swaps_within_type(self, populated_stack):
        hero = populated_stack.objects()[2]
        assert populated_stack.move_within_type(hero, 'up')
        assert names(populated_stack)[2:4] == ['villain', 'hero']
        assert populated_stack.move_within_type(hero, 'down')
        assert names(populated_stack)[2:4] == ['hero', 'villain']

    def test_noop_at_band_edge(self, populated_stack):
        before = names(populated_stack)
        villain = populated_stack.objects()[3]
        spark = populated_stack.objects()[6]
        sky = populated_stack.objects()[1]
        assert populated_stack.move_within_type(villain, 'up')
        assert populated_stack.move_within_type(spark, 'up')
        assert populated_stack.move_within_type(sky, 'down')
        assert names(populated_stack) == before

    def test_absent_object_reports_violation(self, populated_stack):
        before = names(populated_stack)
        assert populated_stack.move_within_type(LayerRecord(name='ghost'), 'up') is False
        assert names(populated_stack) == before
        assert isinstance(populated_stack.last_violation, StructuralViolation)

    def test_invalid_direction(self, populated_stack):
        hero = populated_stack.objects()[2]
        assert populated_stack.move_within_type(hero, 'sideways') is False

    def test_never_crosses_bands_on_random_sequences(self):
        rng = random.Random(11)
        kinds = list(LayerType)
        for _ in range(50):
            objs = [LayerRecord(name=f'o{i}', layer_type=rng.choice(kinds)) for i in range(8)]
            stack = LayerStack(objs)   # 整列していない列も対象
            obj = rng.choice(objs)
            others_before = [o for o in stack.objects() if o.kind is not obj.kind]
            positions_before = stack.same_type_positions(obj.kind)

            stack.move_within_type(obj, rng.choice(['up', 'down']))

            assert obj.kind is LayerType.parse(obj.layer_type)
            assert [o for o in stack.objects() if o.kind is not obj.kind] == others_before
            assert stack.same_type_positions(obj.kind) == positions_before
            # 他タイプのオブジェクトの位置も不変
            for o in others_before:
                assert stack.index_of(o) == objs.index(o)


class TestMoveToEdge:

    def test_top_and_bottom(self, populated_stack):
        for name in ('a', 'b'):
            populated_stack.insert(LayerRecord(name=name), 'prop')
        sword = populated_stack.objects()[4]

        assert populated_stack.move_to_edge_within_type(sword, 'top')
        assert names(populated_stack)[4:8] == ['shield', 'a', 'b', 'sword']

        assert populated_stack.move_to_edge_within_type(sword, 'bottom')
        assert names(populated_stack)[4:8] == ['sword', 'shield', 'a', 'b']
        assert names(populated_stack)[-1] == 'spark'

    def test_keeps_other_types_in_place_when_unsorted(self):
        a, b, c = (LayerRecord(name=n, layer_type='prop') for n in 'abc')
        x = LayerRecord(name='x', layer_type='scene')
        stack = LayerStack([a, x, b, c])
        assert stack.move_to_edge_within_type(c, 'bottom')
        assert names(stack) == ['c', 'x', 'a', 'b']

    def test_absent_object(self, populated_stack):
        assert populated_stack.move_to_edge_within_type(LayerRecord(), 'top') is False

    def test_frame_cannot_move(self, populated_stack, frame):
        assert populated_stack.move_to_edge_within_type(frame, 'top') is False
        assert populated_stack.objects()[0] is frame


class TestResortAll:

    def test_repairs_bulk_mutation(self, populated_stack, frame):
        objs = populated_stack.objects()
        shuffled = objs[1:]
        random.Random(5).shuffle(shuffled)
        stack = LayerStack(shuffled + [frame])
        stack.resort_all()
        assert stack.is_sorted()
        assert stack.objects()[0] is frame
        assert [o.kind for o in stack.objects()[1:]] == sorted(
            (o.kind for o in objs[1:]), key=lambda k: k.band
        )

    def test_stable_within_type(self):
        p1, p2, p3 = (LayerRecord(name=f'p{i}', layer_type='prop') for i in range(1, 4))
        s1 = LayerRecord(name='s1', layer_type='scene')
        stack = LayerStack([p2, s1, p3, p1])
        stack.resort_all()
        assert names(stack) == ['s1', 'p2', 'p3', 'p1']

    def test_idempotent(self, populated_stack):
        populated_stack.resort_all()
        first = populated_stack.objects()
        populated_stack.resort_all()
        assert populated_stack.objects() == first

    def test_retagged_object_moves_to_new_band(self, populated_stack):
        sword = populated_stack.objects()[4]
        sword.layer_type = 'composite'   # ホストが直接書き換え
        assert not populated_stack.is_sorted()
        populated_stack.resort_all()
        assert names(populated_stack)[-1] == 'sword'

    def test_resort_then_insert_all_orders(self):
        kinds = [LayerType.EFFECT, LayerType.SCENE, LayerType.PROP, LayerType.COMPOSITE, LayerType.CHARACTER]
        for order in itertools.permutations(kinds):
            stack = LayerStack()
            for kind in order:
                stack.insert(LayerRecord(name=kind.value), kind)
            assert names(stack) == [k.value for k in LayerType]


class TestQueries:

    def test_band_bounds(self, populated_stack):
        assert populated_stack.band_bounds('character') == (2, 4)
        assert populated_stack.band_bounds('composite') == (7, 7)
        assert populated_stack.band_bounds('scene') == (1, 2)

    def test_z_index(self, populated_stack, frame):
        villain = populated_stack.objects()[3]
        assert populated_stack.z_index(villain) == band_range('character').start + 1
        assert populated_stack.z_index(frame) == -1
        assert populated_stack.z_index(LayerRecord()) == -1

    def test_remove(self, populated_stack):
        spark = populated_stack.objects()[-1]
        assert populated_stack.remove(spark)
        assert spark not in populated_stack
        assert populated_stack.remove(spark) is False


class TestClassification:

    def test_uses_classifier_answer(self):
        class Classifier:
            def classify(self, image):
                return 'character'

        stack = LayerStack()
        obj = LayerRecord(name='cutout', image=PixelBuffer.blank(1, 1))
        assert stack.insert_classified(obj, Classifier())
        assert obj.kind is LayerType.CHARACTER

    def test_failure_falls_back_to_prop(self):
        class Broken:
            def classify(self, image):
                raise RuntimeError('service down')

        stack = LayerStack()
        obj = LayerRecord(name='cutout', layer_type='scene', image=PixelBuffer.blank(1, 1))
        assert stack.insert_classified(obj, Broken())
        assert obj.kind is LayerType.PROP

    @pytest.mark.parametrize('answer', ['vehicle', '', None])
    def test_unknown_answer_is_prop(self, answer):
        class Odd:
            def classify(self, image):
                return answer

        stack = LayerStack()
        obj = LayerRecord(image=PixelBuffer.blank(1, 1))
        stack.insert_classified(obj, Odd())
        assert obj.kind is LayerType.PROP
