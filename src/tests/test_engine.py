import unittest
import warnings
import numpy as np

from qgamcal.engine import SmoothPinballGAM
from qgamcal.exceptions import CalibrationInputError
from qgamcal.qgam import CalibratedQuantileGAM
from qgamcal.results import Convergence

from stubs import QuadraticEngine, mean_fitted_statistic


def make_data(n, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(0, 1, size=(n, 1))
    y = np.sin(2 * np.pi * X[:, 0]) + rng.normal(scale=0.3, size=n)
    return X, y


class TestSmoothPinballGAM(unittest.TestCase):

    def setUp(self):
        self.X, self.y = make_data(100)
        self.engine = SmoothPinballGAM(n_splines=8, max_iter=100, tol=1e-5)
        self.width = 0.2 * 0.3

    def test_fit_reports_edf_and_standard_errors(self):
        outcome = self.engine.fit(self.X, self.y, np.ones(100), 0.5, self.width, 0.0)
        self.assertEqual(outcome.convergence, Convergence.FULL)
        self.assertEqual(outcome.fitted.shape, (100,))
        self.assertEqual(list(outcome.edf), ["s(0)"])
        self.assertTrue(np.all(outcome.se_fit > 0))
        self.assertGreater(outcome.n_iter, 0)

    def test_higher_rate_gives_smoother_fit(self):
        wiggly = self.engine.fit(self.X, self.y, np.ones(100), 0.5, self.width, -2.0)
        smooth = self.engine.fit(self.X, self.y, np.ones(100), 0.5, self.width, 4.0)
        self.assertEqual(wiggly.convergence, Convergence.FULL)
        self.assertEqual(smooth.convergence, Convergence.FULL)
        self.assertGreater(wiggly.edf["s(0)"], smooth.edf["s(0)"])
        self.assertGreater(np.mean(smooth.se_fit), np.mean(wiggly.se_fit))

    def test_quantile_level_orders_fits(self):
        low = self.engine.fit(self.X, self.y, np.ones(100), 0.1, self.width, 0.0)
        high = self.engine.fit(self.X, self.y, np.ones(100), 0.9, self.width, 0.0)
        self.assertEqual(low.convergence, Convergence.FULL)
        self.assertEqual(high.convergence, Convergence.FULL)
        self.assertGreater(np.mean(high.fitted - low.fitted), 0.3)

    def test_zero_weights_keep_fitted_values_for_all_rows(self):
        weights = np.ones(100)
        weights[::3] = 0.0
        outcome = self.engine.fit(self.X, self.y, weights, 0.5, self.width, 0.0)
        self.assertEqual(outcome.convergence, Convergence.FULL)
        self.assertEqual(outcome.fitted.shape, (100,))
        self.assertTrue(np.all(np.isfinite(outcome.fitted)))

    def test_feature_names(self):
        engine = SmoothPinballGAM(n_splines=6, feature_names=["age"])
        outcome = engine.fit(self.X, self.y, None, 0.5, self.width, 0.0)
        self.assertEqual(list(outcome.edf), ["s(age)"])

    def test_iteration_cap_is_reported(self):
        engine = SmoothPinballGAM(n_splines=8, max_iter=1, tol=1e-12, partial_tol=1e-12)
        outcome = engine.fit(self.X, self.y, None, 0.5, self.width, 0.0)
        self.assertEqual(outcome.convergence, Convergence.FAILED)
        self.assertIn("did not converge", outcome.message)

    def test_length_mismatch_is_a_failed_fit(self):
        outcome = self.engine.fit(self.X, self.y, np.ones(5), 0.5, self.width, 0.0)
        self.assertTrue(outcome.failed)


class TestCalibratedQuantileGAM(unittest.TestCase):

    def setUp(self):
        self.X, self.y = make_data(80, seed=1)

    def test_grid_fit_and_predict(self):
        model = CalibratedQuantileGAM(
            qu=0.5, lsig=[-1.0, 0.0, 1.0], err=0.3,
            control={"K": 3, "seed": 42}, engine=SmoothPinballGAM(n_splines=6, max_iter=100),
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model.fit(self.X, self.y)
        self.assertIn(model.log_rate_, [-1.0, 0.0, 1.0])
        self.assertEqual(len(model.calibration_.curve), 3)
        self.assertEqual(model.err_, 0.3)
        self.assertAlmostEqual(model.width_, 0.3 * model.sigma_)
        predictions = model.predict(self.X)
        self.assertEqual(predictions.shape, (80,))
        self.assertTrue(np.all(np.isfinite(predictions)))
        report = model.check(self.y)
        self.assertIsNotNone(report.bias)

    def test_default_engine_with_automatic_err(self):
        X, y = make_data(120, seed=2)
        model = CalibratedQuantileGAM(qu=0.5, lsig=[-2.0, -1.0, 0.0, 1.0], control={"K": 3, "seed": 1})
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model.fit(X, y)
        self.assertLess(model.err_, 0.3)
        curve = model.calibration_.curve
        self.assertTrue(all(p.informative for p in curve))
        self.assertTrue(any(p.converged for p in curve))
        self.assertTrue(np.all(np.diff(curve.edf_matrix()[:, 0]) < 0))
        self.assertIn(model.log_rate_, [-2.0, -1.0, 0.0, 1.0])
        self.assertEqual(model.outcome_.convergence, Convergence.FULL)
        self.assertTrue(np.all(np.isfinite(model.predict(X))))

    def test_adaptive_fit_with_stub_engine(self):
        stub = QuadraticEngine(center=0.25)
        model = CalibratedQuantileGAM(qu=0.5, bounds=(-2.0, 2.0), err=0.1, control={"K": 2, "seed": 0},
                                      engine=stub, statistic=mean_fitted_statistic)
        model.fit(self.X, self.y)
        self.assertAlmostEqual(model.log_rate_, 0.25, delta=1e-3)
        np.testing.assert_allclose(model.predict(self.X[:4]), 0.0, atol=1e-5)
        self.assertEqual(model.calibration_.mode, "adaptive")

    def test_default_bounds_follow_response_scale(self):
        stub = QuadraticEngine(center=100.0)
        model = CalibratedQuantileGAM(qu=0.5, err=0.1, control={"K": 2, "seed": 0, "max_evals": 40},
                                      engine=stub, statistic=mean_fitted_statistic)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model.fit(self.X, self.y)
        # The minimum lies far outside, the search ends at the upper bound
        upper = np.log(model.sigma_) + 3.0
        self.assertAlmostEqual(model.calibration_.selected_log_rate, upper, delta=1e-2)

    def test_invalid_quantile(self):
        with self.assertRaises(CalibrationInputError):
            CalibratedQuantileGAM(qu=1.5, lsig=[0.0], err=0.1, engine=QuadraticEngine()).fit(self.X, self.y)

    def test_predict_before_fit(self):
        from sklearn.exceptions import NotFittedError
        with self.assertRaises(NotFittedError):
            CalibratedQuantileGAM().predict(self.X)


if __name__ == '__main__':
    unittest.main()
