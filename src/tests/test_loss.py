import unittest
import numpy as np

from qgamcal import loss
from qgamcal.exceptions import CalibrationInputError


class TestPinballLoss(unittest.TestCase):

    def setUp(self):
        self.y = np.array([1.0, 2.0, 3.0])
        self.q_high = np.array([2.0, 3.0, 4.0])  # Predictions are too high
        self.q_low = np.array([0.0, 1.0, 2.0])   # Predictions are too low

    def test_pinball_known_values(self):
        tau = 0.1
        np.testing.assert_allclose(loss.pinball_loss(self.y, self.q_high, tau), [(1 - tau)] * 3)
        np.testing.assert_allclose(loss.pinball_loss(self.y, self.q_low, tau), [tau] * 3)
        np.testing.assert_allclose(loss.pinball_loss(self.y, self.y, tau), 0.0)

    def test_smooth_loss_converges_to_pinball(self):
        y = np.linspace(-3, 3, 41)
        mu = np.zeros_like(y)
        exact = loss.pinball_loss(y, mu, 0.8)
        for width in [1.0, 0.1, 0.01, 1e-4]:
            smooth = loss.smooth_pinball_loss(y, mu, 0.8, width)
            # The gap is non-negative and bounded by width * log(2)
            self.assertTrue(np.all(smooth >= exact - 1e-12))
            self.assertTrue(np.all(smooth - exact <= width * np.log(2) + 1e-12))
        np.testing.assert_allclose(loss.smooth_pinball_loss(y, mu, 0.8, 1e-6), exact, atol=1e-5)

    def test_smooth_loss_does_not_overflow(self):
        values = loss.smooth_pinball_loss(np.array([1e6, -1e6]), np.zeros(2), 0.3, 1e-3)
        self.assertTrue(np.all(np.isfinite(values)))
        np.testing.assert_allclose(values, [0.3 * 1e6, 0.7 * 1e6], rtol=1e-9)

    def test_gradient_matches_finite_difference(self):
        y = np.array([-1.3, 0.2, 0.9, 2.5])
        mu = np.array([0.1, -0.4, 1.2, 2.0])
        width, qu, step = 0.3, 0.25, 1e-6
        numeric = (loss.smooth_pinball_loss(y, mu + step, qu, width) - loss.smooth_pinball_loss(y, mu - step, qu, width)) / (2 * step)
        np.testing.assert_allclose(loss.smooth_pinball_grad(y, mu, qu, width), numeric, rtol=1e-5, atol=1e-8)

    def test_hessian_matches_finite_difference(self):
        y = np.array([-1.3, 0.2, 0.9, 2.5])
        mu = np.array([0.1, -0.4, 1.2, 2.0])
        width, qu, step = 0.3, 0.75, 1e-6
        numeric = (loss.smooth_pinball_grad(y, mu + step, qu, width) - loss.smooth_pinball_grad(y, mu - step, qu, width)) / (2 * step)
        np.testing.assert_allclose(loss.smooth_pinball_hess(y, mu, qu, width), numeric, rtol=1e-5, atol=1e-8)

    def test_minimiser_is_close_to_sample_quantile(self):
        rng = np.random.default_rng(0)
        y = rng.normal(size=2000)
        grid = np.linspace(-2, 2, 4001)
        totals = [loss.smooth_pinball_loss(y, m, 0.9, 0.01).mean() for m in grid]
        self.assertAlmostEqual(grid[int(np.argmin(totals))], np.quantile(y, 0.9), delta=0.02)


class TestScaleAndWidth(unittest.TestCase):

    def test_robust_scale_of_normal_sample(self):
        rng = np.random.default_rng(1)
        self.assertAlmostEqual(loss.robust_scale(rng.normal(0, 2, size=20000)), 2.0, delta=0.1)

    def test_robust_scale_fallbacks(self):
        # MAD is zero but the data still vary
        self.assertGreater(loss.robust_scale([0, 0, 0, 0, 0, 10]), 0)
        self.assertEqual(loss.robust_scale([4, 4, 4]), 1.0)

    def test_numeric_err_is_used_unmodified(self):
        self.assertEqual(loss.select_err(0.5, 2.0, n=100, err=0.05), 0.05)

    def test_auto_err_from_supplied_variance(self):
        err = loss.select_err(0.5, 1.0, avar=0.01)
        self.assertAlmostEqual(err, 0.1 / np.log(2))

    def test_auto_err_is_clipped(self):
        self.assertEqual(loss.select_err(0.5, 1.0, avar=100.0), loss.ERR_MAX)
        self.assertEqual(loss.select_err(0.5, 1.0, avar=1e-12), loss.ERR_MIN)

    def test_auto_err_shrinks_with_sample_size(self):
        small = loss.select_err(0.9, 1.0, n=100)
        large = loss.select_err(0.9, 1.0, n=10000)
        self.assertLess(large, small)

    def test_invalid_err(self):
        with self.assertRaises(CalibrationInputError):
            loss.select_err(0.5, 1.0, n=10, err=0.0)
        with self.assertRaises(CalibrationInputError):
            loss.select_err(0.5, 1.0, n=10, err="fast")
        with self.assertRaises(CalibrationInputError):
            loss.select_err(0.5, 1.0)


if __name__ == '__main__':
    unittest.main()
