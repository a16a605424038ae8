import os
import re
import tempfile
import unittest
from dataclasses import replace
from decimal import Decimal
from unittest.mock import patch

from PIL import Image

from PerceptronApparatus import (Tick, Scale, linear_rule, log_rule, relu_rule, drange, dec_str,
                                 RuleRing, AzimuthalRing, RadialRing, RenderContext, Network, RuleSet,
                                 ring_sequence, Board, Geometry, Style, Styles, Model, CutLayer, WidthPolicy,
                                 Group, Line, Path, Text, Circle, nodes_with, walk,
                                 serialize, layer_documents, raster_preview, write_cnc_files,
                                 ApparatusError, InvalidRangeError, LayoutOverflowError, MissingContextError)


def view_box_of(markup: str):
    match = re.search(r'viewBox="([^"]+)"', markup)
    return [float(x) for x in match.group(1).split()]


class DecimalHelpersTestCase(unittest.TestCase):
    def test_drange_is_exact(self):
        values = list(drange(0, 1, 0.1))
        self.assertEqual(len(values), 11)
        self.assertEqual(values[3], Decimal('0.3'))
        self.assertEqual(values[-1], Decimal('1.0'))

    def test_dec_str(self):
        self.assertEqual(dec_str(Decimal('1.0')), '1')
        self.assertEqual(dec_str(Decimal('10')), '10')
        self.assertEqual(dec_str(Decimal('0.50')), '0.5')
        self.assertEqual(dec_str(Decimal('-0')), '0')
        self.assertEqual(dec_str(Decimal('1E+1')), '10')


class LinearRuleTestCase(unittest.TestCase):
    def test_unit_rule(self):
        rule = linear_rule(0, 1, 0.1, 0.5)
        self.assertEqual(len(rule), 11)
        self.assertEqual([t.label for t in rule.labeled()], ['0', '0.5', '1'])
        self.assertEqual(rule.min_value, 0)
        self.assertEqual(rule.max_value, 1)

    def test_weight_rule(self):
        rule = linear_rule(-10, 10, 2, 10)
        self.assertEqual(len(rule), 11)
        self.assertEqual([t.label for t in rule.labeled()], ['-10', '0', '10'])

    def test_monotonic(self):
        for rule in (linear_rule(0, 10, 1, 5), linear_rule(-10, 10, 2, 10), log_rule()):
            for a, b in zip(rule.ticks, rule.ticks[1:]):
                self.assertLess(a.value, b.value)

    def test_frac_pos_of(self):
        rule = linear_rule(-10, 10, 2, 10)
        self.assertEqual(rule.frac_pos_of(-10), 0)
        self.assertEqual(rule.frac_pos_of(0), 0.5)
        self.assertEqual(rule.frac_pos_of(10), 1)

    def test_single_tick(self):
        rule = linear_rule(3, 3, 1, 1)
        self.assertEqual(len(rule), 1)
        self.assertEqual(rule.frac_pos_of(3), 0)

    def test_invalid_ranges(self):
        with self.assertRaises(InvalidRangeError):
            linear_rule(0, 1, 0, 0.5)
        with self.assertRaises(InvalidRangeError):
            linear_rule(0, 1, 0.1, -1)
        with self.assertRaises(InvalidRangeError):
            linear_rule(2, 1, 0.1, 0.5)

    def test_scale_must_increase(self):
        with self.assertRaises(InvalidRangeError):
            Scale((Tick(Decimal(1)), Tick(Decimal(1))))
        with self.assertRaises(InvalidRangeError):
            Scale(())

    def test_errors_are_value_errors(self):
        self.assertTrue(issubclass(InvalidRangeError, ValueError))
        self.assertTrue(issubclass(LayoutOverflowError, ApparatusError))


class LogRuleTestCase(unittest.TestCase):
    def test_closure(self):
        rule = log_rule()
        self.assertEqual(len(rule), 90)
        self.assertEqual(rule.ticks[0].value, Decimal('1.0'))
        self.assertEqual(rule.ticks[0].angle, 0)
        self.assertEqual(rule.ticks[-1].value, Decimal('9.9'))
        self.assertLess(rule.ticks[-1].angle, 360)
        self.assertAlmostEqual(rule.ticks[-1].angle, 358.43, places=2)

    def test_labels(self):
        labels = {dec_str(t.value): t.label for t in log_rule()}
        self.assertEqual(labels['1'], '1')
        self.assertEqual(labels['1.1'], '1.1')
        self.assertEqual(labels['2.2'], '2.2')
        self.assertIsNone(labels['2.1'])
        self.assertEqual(labels['5.5'], '5.5')
        self.assertIsNone(labels['5.6'])

    def test_angles_increase(self):
        angles = log_rule().angles
        self.assertEqual(angles, sorted(angles))


class ReluRuleTestCase(unittest.TestCase):
    def setUp(self):
        self.outer, self.inner = relu_rule(10, 0.25)

    def test_span(self):
        self.assertEqual(len(self.outer), 80)
        self.assertEqual(self.outer.min_value, Decimal('-9.75'))
        self.assertEqual(self.outer.max_value, Decimal('10'))
        self.assertAlmostEqual(self.outer.ticks[-1].angle, 180)

    def test_shared_angles(self):
        self.assertEqual(self.outer.angles, self.inner.angles)

    def test_clamp(self):
        for o, i in zip(self.outer, self.inner):
            self.assertEqual(i.value, max(o.value, Decimal(0)))

    def test_labels(self):
        self.assertEqual(self.outer.ticks[0].label, None)  # -9.75
        labeled_outer = [t.label for t in self.outer.labeled()]
        self.assertIn('-5', labeled_outer)
        self.assertIn('10', labeled_outer)
        labeled_inner = [t.label for t in self.inner.labeled()]
        self.assertEqual(labeled_inner, [str(i) for i in range(11)])

    def test_invalid(self):
        with self.assertRaises(InvalidRangeError):
            relu_rule(10, 0)
        with self.assertRaises(InvalidRangeError):
            relu_rule(0, 0.25)


class RuleRingTestCase(unittest.TestCase):
    def test_needs_angles(self):
        with self.assertRaises(InvalidRangeError):
            RuleRing(linear_rule(0, 1, 0.1, 0.5))

    def test_needs_equal_lengths(self):
        outer, _ = relu_rule(10, 0.25)
        with self.assertRaises(InvalidRangeError):
            RuleRing(outer, log_rule())

    def test_render(self):
        ring = RuleRing.log()
        nodes = ring.render(RenderContext(570, 30, 1))
        groups = [n for n in nodes if isinstance(n, Group)]
        self.assertEqual(len(groups), 90)
        self.assertEqual(nodes[-1], Circle(555, classes='top full'))
        self.assertEqual(groups[0].rotate, 0)
        heavy = nodes_with(nodes, 'top etch heavy')
        self.assertEqual(len(heavy), len(log_rule().labeled()))

    def test_missing_context(self):
        with self.assertRaises(MissingContextError):
            RuleRing.log().render(None)


class AzimuthalRingTestCase(unittest.TestCase):
    def setUp(self):
        self.ring = AzimuthalRing(linear_rule(0, 1, 0.1, 0.5), 5)
        self.ctx = RenderContext(500, 10, 2)

    def test_slider_count(self):
        nodes = self.ring.render(self.ctx)
        self.assertEqual(len(nodes), 5)
        self.assertEqual(len(nodes_with(nodes, 'top slider')), 5)
        self.assertEqual(len(nodes_with(nodes, 'bottom slider')), 5)

    def test_index_labels(self):
        nodes = self.ring.render(self.ctx)
        labels = [n.text for n in nodes_with(nodes, 'indices')]
        self.assertEqual(labels, ['B1', 'B2', 'B3', 'B4', 'B5'])

    def test_sector_rotation(self):
        nodes = self.ring.render(self.ctx)
        self.assertEqual([n.rotate for n in nodes], [0, -72, -144, -216, -288])

    def test_ticks_within_padding(self):
        nodes = self.ring.render(self.ctx)
        r = self.ctx.mid_radius
        g = Geometry()
        pad = self.ring.az_padding(r, 72, g)
        tick_angles = [-n.rotate for n in nodes[0].children if isinstance(n, Line)]
        self.assertEqual(len(tick_angles), 11)
        self.assertAlmostEqual(tick_angles[0], pad)
        self.assertAlmostEqual(tick_angles[-1], 72 - pad)

    def test_bottom_slider_overruns_top(self):
        nodes = self.ring.render(self.ctx)
        top = nodes_with(nodes[:1], 'top slider')[0].arcs[0]
        bottom = nodes_with(nodes[:1], 'bottom slider')[0].arcs[0]
        self.assertLess(bottom.start, top.start)
        self.assertGreater(bottom.end, top.end)

    def test_idempotent(self):
        self.assertEqual(self.ring.render(self.ctx), self.ring.render(self.ctx))

    def test_needs_sliders(self):
        with self.assertRaises(InvalidRangeError):
            AzimuthalRing(linear_rule(0, 1, 0.1, 0.5), 0)

    def test_too_dense(self):
        ring = AzimuthalRing(linear_rule(0, 1, 0.1, 0.5), 200)
        with self.assertRaises(LayoutOverflowError) as cm:
            ring.render(RenderContext(540, 10, 1))
        self.assertIn('200 sliders', str(cm.exception))

    def test_fits_with_room(self):
        g = Geometry()
        r = 535
        ring = AzimuthalRing(linear_rule(0, 1, 0.1, 0.5), 60)
        self.assertLess(2 * ring.az_padding(r, 6, g), 6)
        ring.check_fits(r, g)


class RadialRingTestCase(unittest.TestCase):
    def setUp(self):
        self.ring = RadialRing(linear_rule(-10, 10, 2, 10), 2, 3)
        self.ctx = RenderContext(400, 100, 2)

    def test_slider_count(self):
        nodes = self.ring.render(self.ctx)
        self.assertEqual(len(nodes_with(nodes, 'top slider')), 6)
        self.assertEqual(len(nodes_with(nodes, 'bottom slider')), 6)
        self.assertEqual(self.ring.slider_count, 6)

    def test_slider_angles(self):
        nodes = self.ring.render(self.ctx)
        angles = [-n.rotate for n in nodes_with(nodes, 'top slider')]
        self.assertEqual(angles, [45, 90, 135, 225, 270, 315])

    def test_guides(self):
        nodes = self.ring.render(self.ctx)
        guides = [n for n in nodes if isinstance(n, Path)]
        self.assertEqual(len(guides), 11)
        self.assertEqual(guides[0].arcs[0].r, 395)  # minimum at the outer edge
        self.assertEqual(guides[-1].arcs[0].r, 305)
        self.assertTrue(all(len(guide.arcs) == 2 for guide in guides))
        self.assertEqual(len([guide for guide in guides if 'heavy' in guide.classes]), 3)

    def test_group_labels(self):
        nodes = self.ring.render(self.ctx)
        self.assertEqual([n.text for n in nodes_with(nodes, 'indices')], ['B1', 'B2'])

    def test_degenerate_radius(self):
        ring = RadialRing(linear_rule(-10, 10, 2, 10), 1, 1)
        nodes = ring.render(RenderContext(5, 10, 1))
        guides = [n for n in nodes if isinstance(n, Path)]
        self.assertEqual(guides[0].arcs[0], (0, 0, 360))

    def test_idempotent(self):
        self.assertEqual(self.ring.render(self.ctx), self.ring.render(self.ctx))


class RingSequenceTestCase(unittest.TestCase):
    def test_small_network(self):
        rings = ring_sequence(Network(3, 2, 1))
        self.assertIsInstance(rings[0], RuleRing)
        network_rings = rings[1:]
        self.assertEqual(len(network_rings), 5)
        self.assertEqual([r.shape for r in network_rings if isinstance(r, RadialRing)], [(2, 3), (1, 2)])
        self.assertEqual([r.sliders for r in network_rings if isinstance(r, AzimuthalRing)], [3, 2, 1])

    def test_relu(self):
        rings = ring_sequence(Network(3, 2, 1), relu=True)
        self.assertEqual(len(rings), 7)
        self.assertIsInstance(rings[1], RuleRing)

    def test_custom_rules(self):
        rings = ring_sequence(Network(3, 2, 1), RuleSet(hidden=(0, 5, 0.5, 1)))
        self.assertEqual(rings[3].scale.max_value, 5)

    def test_network_needs_units(self):
        with self.assertRaises(ApparatusError):
            Network(0, 2, 1)


class BoardLayoutTestCase(unittest.TestCase):
    def test_conservation(self):
        g = Geometry()
        for relu in (False, True):
            layout = Board.for_network(Network(36, 6, 10), relu=relu).layout()
            n = len(layout.placements)
            self.assertLessEqual(sum(layout.widths) + g.radial_padding * (n - 1) + g.center_radius, g.radius)
            innermost = layout.placements[-1].ctx
            self.assertGreaterEqual(innermost.inner_radius, g.center_radius - 1e-9)

    def test_equal_split(self):
        widths = Board.for_network(Network(36, 6, 10)).layout().widths
        self.assertEqual(widths, [30, 10, 105, 10, 105, 10])

    def test_weighted_split(self):
        g = Geometry(width_policy=WidthPolicy.WEIGHTED)
        widths = Board.for_network(Network(36, 6, 10), g).layout().widths
        self.assertAlmostEqual(widths[2] + widths[4], 210)
        self.assertAlmostEqual(widths[2] / widths[4], 216 / 60)

    def test_no_overlap(self):
        layout = Board.for_network(Network(3, 2, 1)).layout()
        for above, below in zip(layout.placements, layout.placements[1:]):
            self.assertGreaterEqual(above.ctx.inner_radius, below.ctx.outer_radius)

    def test_layer_indices(self):
        layout = Board.for_network(Network(3, 2, 1), relu=True).layout()
        self.assertEqual([p.ctx.layer_index for p in layout.placements], [1, 1, 1, 2, 3, 4, 5])

    def test_overflow(self):
        board = Board.for_network(Network(3, 2, 1), Geometry(size=400))
        with self.assertRaises(LayoutOverflowError) as cm:
            board.layout()
        self.assertIn('RuleRing', str(cm.exception))
        with self.assertRaises(LayoutOverflowError):
            board.render()

    def test_unknown_ring(self):
        with self.assertRaises(ApparatusError):
            Board(('not a ring',)).layout()

    def test_dense_input_overflows(self):
        board = Board.for_network(Network(200, 6, 10))
        with self.assertRaises(LayoutOverflowError) as cm:
            board.layout()
        self.assertIn('AzimuthalRing with 200 sliders', str(cm.exception))
        with self.assertRaises(LayoutOverflowError):
            board.render()

    def test_channels(self):
        self.assertEqual(Board.for_network(Network(3, 2, 1)).layout().channels, [])
        layout = Board.for_network(Network(3, 2, 1), relu=True).layout()
        self.assertEqual(len(layout.channels), 1)
        channel = layout.channels[0]
        self.assertEqual(channel.classes, 'bottom rotating')
        first, second = layout.placements[0].ctx, layout.placements[1].ctx
        self.assertLess(channel.r, first.inner_radius)
        self.assertGreater(channel.r, second.outer_radius)

    def test_fasteners(self):
        g = Geometry()
        layout = Board.for_network(Network(36, 6, 10), g).layout()
        self.assertEqual(len(layout.fasteners), 2 * g.ring_fasteners + g.center_fasteners)
        self.assertTrue(all('fastener' in f.classes for f in layout.fasteners))

    def test_render_contains_every_ring(self):
        nodes = Board.for_network(Network(3, 2, 1)).render()
        self.assertEqual(nodes[0], Circle(600, classes='top full', stroke_w=2))
        self.assertEqual(len(nodes_with(nodes, 'top slider')), 3 + 6 + 2 + 2 + 1)
        self.assertEqual(len(nodes_with(nodes, 'debug')), 12)


class SerializeTestCase(unittest.TestCase):
    def setUp(self):
        self.g = Geometry(size=600, center_diameter=150, radial_padding=15)
        self.nodes = Board.for_network(Network(2, 2, 1), self.g).render()

    def test_view_box(self):
        markup = serialize(self.nodes, self.g)
        self.assertEqual(view_box_of(markup), [-310, -310, 620, 620])
        self.assertIn('<svg', markup)

    def test_classes(self):
        markup = serialize(self.nodes, self.g)
        self.assertIn('class="top slider"', markup)
        self.assertIn('class="bottom slider"', markup)
        self.assertIn('class="top etch indices"', markup)
        self.assertIn('rotate(', markup)

    def test_debug_hidden(self):
        markup = serialize(self.nodes, self.g)
        self.assertRegex(markup, r'\.debug \{\s*display: none;')

    def test_debug_shown(self):
        with patch('PerceptronApparatus.DEBUG', True):
            markup = serialize(self.nodes, self.g)
        self.assertNotRegex(markup, r'\.debug \{\s*display: none;')

    def test_hidden_layers(self):
        markup = serialize(self.nodes, self.g, hidden={CutLayer.TOP_SLIDER})
        self.assertIn('.top.slider { display: none; }', markup)
        self.assertNotIn('.bottom.slider { display: none; }', markup)

    def test_layer_documents(self):
        docs = layer_documents(self.nodes, self.g)
        self.assertEqual(set(docs), set(CutLayer))
        top_full = docs[CutLayer.TOP_FULL]
        self.assertNotIn('.top.full { display: none; }', top_full)
        for layer in CutLayer:
            if layer != CutLayer.TOP_FULL:
                self.assertIn(f'{layer.value} {{ display: none; }}', top_full)
        # every pass shares the same geometry
        self.assertEqual(len({len(re.findall('<line', doc)) for doc in docs.values()}), 1)

    def test_print_style(self):
        markup = serialize(self.nodes, self.g, Styles.Print)
        self.assertIn('fill="black"', markup)

    def test_cut_layer_matching(self):
        self.assertTrue(CutLayer.TOP_ETCH.matches('top etch'))
        self.assertFalse(CutLayer.TOP_ETCH.matches('top etch heavy'))
        self.assertTrue(CutLayer.TOP_ETCH_HEAVY.matches('top etch heavy'))
        self.assertTrue(CutLayer.TOP_FULL.matches('top full fastener'))
        self.assertFalse(CutLayer.BOTTOM_SLIDER.matches('top slider'))


class RasterPreviewTestCase(unittest.TestCase):
    def test_preview(self):
        g = Geometry(size=600, center_diameter=150, radial_padding=15)
        nodes = Board.for_network(Network(2, 2, 1), g).render()
        img = raster_preview(nodes, g)
        self.assertIsInstance(img, Image.Image)
        self.assertEqual(img.size, (1240, 1240))
        self.assertNotEqual(img.getpixel((620, 20)), (255, 255, 255))  # board edge

    def test_hidden_layers(self):
        g = Geometry(size=600, center_diameter=150, radial_padding=15)
        nodes = (Circle(290, classes='top full'),)
        img = raster_preview(nodes, g, hidden={CutLayer.TOP_FULL})
        self.assertEqual(img.getcolors(), [(1240 * 1240, (255, 255, 255))])


class GeometryTestCase(unittest.TestCase):
    def test_dim_to_mm(self):
        self.assertEqual(Geometry.dim_to_mm('120cm'), 1200)
        self.assertEqual(Geometry.dim_to_mm('1200mm'), 1200)
        self.assertEqual(Geometry.dim_to_mm('1.2m'), 1200)
        self.assertAlmostEqual(Geometry.dim_to_mm('47in'), 1193.8)
        self.assertEqual(Geometry.dim_to_mm(30), 30)
        with self.assertRaises(ApparatusError):
            Geometry.dim_to_mm('3furlongs')

    def test_from_dict(self):
        g = Geometry.from_dict({'size': '60cm', 'radial_padding': 15, 'width_policy': 'weighted'})
        self.assertEqual(g.size, 600)
        self.assertEqual(g.radius, 300)
        self.assertEqual(g.width_policy, WidthPolicy.WEIGHTED)


class ModelTestCase(unittest.TestCase):
    def test_examples(self):
        names = list(Model.example_names())
        for name in ('Default', 'MNIST', 'XOR', 'Language'):
            self.assertIn(name, names)

    def test_default(self):
        model = Model.from_example('Default')
        self.assertEqual(model.network, Network(36, 6, 10))
        self.assertEqual(model.geometry.size, 1200)

    def test_examples_lay_out(self):
        for name in Model.example_names():
            with self.subTest(name=name):
                Model.from_example(name).board().layout()

    def test_example_sliders_read_forwards(self):
        for name in Model.example_names():
            model = Model.from_example(name)
            for placement in model.board().layout().placements:
                if not isinstance(placement.ring, AzimuthalRing):
                    continue
                for slider in placement.ring.render(placement.ctx, model.geometry):
                    with self.subTest(name=name, slider=slider.rotate):
                        angles = [-n.rotate for n in slider.children if isinstance(n, Line)]
                        for a, b in zip(angles, angles[1:]):
                            self.assertLess(a, b)
                        groove = nodes_with((slider,), 'top slider')[0].arcs[0]
                        self.assertLess(groove.start, groove.end)

    def test_from_dict(self):
        model = Model.from_dict({
            'name': 'Tiny',
            'network': {'n_input': 2, 'n_hidden': 2, 'n_output': 1},
            'geometry': {'size': '60cm', 'center_diameter': 150, 'radial_padding': 15},
            'style': {'bg': 'black', 'etch_color': 'white'},
            'rules': {'hidden': [0, 5, 0.5, 1]},
            'relu': True,
        })
        self.assertEqual(model.geometry.size, 600)
        self.assertEqual(model.rules.hidden, (0, 5, 0.5, 1))
        self.assertEqual(model.style, replace(Style(), bg=Styles.Print.bg, etch_color=Styles.Print.etch_color))
        self.assertEqual(len(model.board().rings), 7)

    def test_bad_rule(self):
        with self.assertRaises(ApparatusError):
            RuleSet.from_dict({'input': [0, 1]})

    def test_write_cnc_files(self):
        model = Model.from_example('XOR')
        with tempfile.TemporaryDirectory() as out_dir:
            paths = write_cnc_files(model, out_dir, 'XOR.Board')
            self.assertEqual(len(paths), 1 + len(CutLayer))
            for path in paths:
                self.assertTrue(os.path.exists(path))
            self.assertTrue(os.path.exists(os.path.join(out_dir, 'XOR.Board-bottom-rotating.svg')))


class PrimitivesTestCase(unittest.TestCase):
    def test_walk(self):
        tree = (Group((Line(0, 0, 0, 1), Group((Text('a', 0, 0),))), rotate=10), Circle(1))
        self.assertEqual([type(n).__name__ for n in walk(tree)], ['Group', 'Line', 'Group', 'Text', 'Circle'])


if __name__ == '__main__':
    unittest.main()
