import unittest

from resampling import (
    STEP_MS,
    FetchWindow,
    SeriesResampler,
    TimeSample,
    bucket_average,
    format_timestamp,
    in_native_coverage,
    interpolate_linear,
    parse_timestamp_ms,
)

NOW_MS = parse_timestamp_ms("2024-06-01T00:00:00Z")
HOUR_MS = 4 * STEP_MS


def _samples(*rows):
    return [TimeSample(timestamp_ms=ts, values={"wave_height": v}) for ts, v in rows]


class TimestampTests(unittest.TestCase):
    def test_naive_local_time_shifted_by_utc_offset(self):
        self.assertEqual(parse_timestamp_ms("2024-06-01T02:00", utc_offset_seconds=7200), NOW_MS)

    def test_format_timestamp_uses_utc_millis(self):
        self.assertEqual(format_timestamp(NOW_MS + STEP_MS), "2024-06-01T00:15:00.000Z")


class InterpolationTests(unittest.TestCase):
    def test_quarter_hour_between_hourly_points(self):
        samples = _samples((NOW_MS, 10.0), (NOW_MS + HOUR_MS, 20.0))
        series = interpolate_linear(samples, ["wave_height"], FetchWindow(0, 4), NOW_MS)
        self.assertEqual(series["wave_height"], [10.0, 12.5, 15.0, 17.5, 20.0])
        self.assertEqual(len(series["time"]), 5)

    def test_points_outside_range_are_clamped(self):
        samples = _samples((NOW_MS, 10.0), (NOW_MS + HOUR_MS, 20.0))
        series = interpolate_linear(samples, ["wave_height"], FetchWindow(2, 8), NOW_MS)
        values = series["wave_height"]
        self.assertEqual(values[:3], [10.0, 10.0, 10.0])
        self.assertEqual(values[-4:], [20.0, 20.0, 20.0, 20.0])

    def test_one_absent_neighbour_yields_present_value(self):
        samples = _samples((NOW_MS, 10.0), (NOW_MS + HOUR_MS, None))
        series = interpolate_linear(samples, ["wave_height"], FetchWindow(0, 3), NOW_MS)
        self.assertEqual(series["wave_height"], [10.0, 10.0, 10.0, 10.0])

    def test_absent_left_neighbour_yields_right_value(self):
        samples = _samples((NOW_MS - HOUR_MS, 1.0), (NOW_MS, None), (NOW_MS + HOUR_MS, 30.0))
        series = interpolate_linear(samples, ["wave_height"], FetchWindow(0, 3), NOW_MS)
        self.assertEqual(series["wave_height"][1:], [30.0, 30.0, 30.0])

    def test_both_neighbours_absent_yields_none(self):
        samples = _samples((NOW_MS - HOUR_MS, 5.0), (NOW_MS, None), (NOW_MS + HOUR_MS, None), (NOW_MS + 2 * HOUR_MS, 7.0))
        series = interpolate_linear(samples, ["wave_height"], FetchWindow(0, 3), NOW_MS)
        self.assertEqual(series["wave_height"][1:], [None, None, None])

    def test_missing_variable_is_none_not_zero(self):
        samples = _samples((NOW_MS, 1.0), (NOW_MS + HOUR_MS, 2.0))
        series = interpolate_linear(samples, ["wave_height", "swell_height"], FetchWindow(0, 2), NOW_MS)
        self.assertEqual(series["swell_height"], [None, None, None])

    def test_no_points_gives_all_none_on_full_grid(self):
        series = interpolate_linear([], ["wave_height"], FetchWindow(1, 1), NOW_MS)
        self.assertEqual(series["wave_height"], [None, None, None])
        self.assertEqual(len(series["time"]), 3)

    def test_grid_is_anchored_at_now_with_fixed_stride(self):
        now_ms = NOW_MS + 7 * 60 * 1000
        samples = _samples((NOW_MS, 1.0), (NOW_MS + HOUR_MS, 2.0))
        series = interpolate_linear(samples, ["wave_height"], FetchWindow(1, 2), now_ms)
        stamps = [parse_timestamp_ms(t) for t in series["time"]]
        self.assertEqual(stamps[0], now_ms - STEP_MS)
        self.assertEqual({b - a for a, b in zip(stamps, stamps[1:])}, {STEP_MS})

    def test_unsorted_samples_are_ordered_first(self):
        samples = _samples((NOW_MS + HOUR_MS, 20.0), (NOW_MS, 10.0))
        series = interpolate_linear(samples, ["wave_height"], FetchWindow(0, 1), NOW_MS)
        self.assertEqual(series["wave_height"], [10.0, 12.5])


class BucketAverageTests(unittest.TestCase):
    def test_samples_are_averaged_per_bucket_and_missing_counts_as_zero(self):
        minute = 60 * 1000
        samples = [
            TimeSample(NOW_MS, {"shortwave_radiation": 1.0}),
            TimeSample(NOW_MS + 5 * minute, {"shortwave_radiation": 2.0}),
            TimeSample(NOW_MS + 10 * minute, {"shortwave_radiation": None}),
            TimeSample(NOW_MS + 15 * minute, {"shortwave_radiation": 4.0}),
        ]
        series = bucket_average(samples, ["shortwave_radiation"], FetchWindow(0, 4), NOW_MS)
        self.assertEqual(series["time"], ["2024-06-01T00:00:00.000Z", "2024-06-01T00:15:00.000Z"])
        self.assertEqual(series["shortwave_radiation"], [1.0, 4.0])

    def test_only_occupied_buckets_inside_window_are_emitted(self):
        samples = [
            TimeSample(NOW_MS - HOUR_MS, {"windspeed_10m": 9.0}),
            TimeSample(NOW_MS + 2 * STEP_MS, {"windspeed_10m": 3.0}),
            TimeSample(NOW_MS + 10 * HOUR_MS, {"windspeed_10m": 9.0}),
        ]
        series = bucket_average(samples, ["windspeed_10m"], FetchWindow(1, 4), NOW_MS)
        self.assertEqual(series["time"], ["2024-06-01T00:30:00.000Z"])
        self.assertEqual(series["windspeed_10m"], [3.0])

    def test_unprovided_variable_is_none_per_bucket(self):
        samples = [TimeSample(NOW_MS, {"shortwave_radiation": 5.0, "wave_height": None})]
        series = bucket_average(
            samples, ["shortwave_radiation", "wave_height"], FetchWindow(0, 1), NOW_MS, provided=["shortwave_radiation"]
        )
        self.assertEqual(series["wave_height"], [None])
        self.assertEqual(len(series["wave_height"]), len(series["time"]))


class SeriesResamplerTests(unittest.TestCase):
    def setUp(self):
        self.payload = {
            "utc_offset_seconds": 0,
            "hourly": {
                "time": ["2024-06-01T00:00", "2024-06-01T01:00"],
                "wave_height": [1.0, 2.0],
                "windspeed_10m": [10.0, 20.0],
            },
            "minutely_15": {
                "time": ["2024-06-01T00:00", "2024-06-01T00:15"],
                "shortwave_radiation": [100.0, 200.0],
            },
        }

    def test_zero_window_skips_resampling(self):
        self.assertIsNone(SeriesResampler().resample(self.payload, 47.0, 8.0, FetchWindow(0, 0), NOW_MS))

    def test_native_block_inside_coverage_uses_buckets(self):
        series, method = SeriesResampler().resample(self.payload, 47.0, 8.0, FetchWindow(0, 4), NOW_MS)
        self.assertEqual(method, "bucket")
        self.assertEqual(series["shortwave_radiation"], [100.0, 200.0])
        self.assertEqual(series["wave_height"], [None, None])

    def test_native_block_outside_coverage_falls_back_to_interpolation(self):
        series, method = SeriesResampler().resample(self.payload, -30.0, 150.0, FetchWindow(0, 4), NOW_MS)
        self.assertEqual(method, "interpolated")
        self.assertEqual(series["windspeed_10m"], [10.0, 12.5, 15.0, 17.5, 20.0])
        for variable in SeriesResampler().variables:
            self.assertEqual(len(series[variable]), len(series["time"]))

    def test_coverage_predicate_is_pluggable(self):
        resampler = SeriesResampler(coverage=lambda lat, lon: False)
        _, method = resampler.resample(self.payload, 47.0, 8.0, FetchWindow(0, 4), NOW_MS)
        self.assertEqual(method, "interpolated")

    def test_default_coverage_regions(self):
        self.assertTrue(in_native_coverage(40.0, -100.0))
        self.assertTrue(in_native_coverage(47.0, 8.0))
        self.assertFalse(in_native_coverage(0.0, 0.0))
        self.assertFalse(in_native_coverage(-33.9, 151.2))

    def test_negative_window_rejected(self):
        with self.assertRaises(ValueError):
            FetchWindow(-1, 0)


if __name__ == "__main__":
    unittest.main()
