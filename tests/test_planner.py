"""
Tests for rate-control planning.
"""

import pytest


def _estimate(duration=3600.0, estimated=False, bitrate=8000.0):
    from h265split.probe import DurationEstimate

    return DurationEstimate(duration, estimated, bitrate, 0, "file-size" if estimated else "gst-discoverer")


class TestBitrateMode:
    """Duration trusted: target = source / ratio."""

    @pytest.mark.parametrize(
        "source,ratio,expected",
        [(8000, 2, 4000), (8000, 4, 2000), (10000, 3, 3333), (5, 2, 3), (8000, 1, 8000), (9999, 20, 500)],
    )
    def test_exact_targets(self, make_request, source, ratio, expected):
        from h265split.planner import RateControlMode, plan

        result = plan(make_request(compression_ratio=ratio), _estimate(bitrate=source))

        assert result.mode is RateControlMode.BITRATE
        assert result.target_bitrate_kbps == expected
        assert result.quality is None

    def test_missing_source_bitrate_assumes_20_mbps(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(compression_ratio=4), _estimate(bitrate=None))
        assert result.target_bitrate_kbps == 5000

    def test_x265_args(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(compression_ratio=2), _estimate(bitrate=8000))

        assert result.element == "x265enc"
        assert result.backend_args == (
            ("bitrate", "4000"),
            ("speed-preset", "veryfast"),
            ("tune", "fastdecode"),
            ("option-string", "vbv-maxrate=4000:vbv-bufsize=8000"),
        )

    def test_x265_bitrate_capped(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(compression_ratio=1), _estimate(bitrate=250_000))

        assert result.target_bitrate_kbps == 250_000
        assert result.args_dict()["bitrate"] == "100000"
        assert result.args_dict()["option-string"] == "vbv-maxrate=100000:vbv-bufsize=200000"

    def test_nvenc_cbr(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="nvh265", compression_ratio=2), _estimate(bitrate=8000))

        assert result.element == "nvh265enc"
        assert result.backend_args == (("rc-mode", "cbr"), ("bitrate", "4000"), ("max-bitrate", "4000"))

    def test_vtenc_cbr(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="vtenc", compression_ratio=2), _estimate(bitrate=8000))

        assert result.backend_args == (
            ("bitrate", "4000"),
            ("rate-control", "1"),
            ("quality", "0.5"),
            ("allow-frame-reordering", "true"),
        )

    @pytest.mark.parametrize(
        "backend,expected",
        [
            ("qsvh265", {"rate-control": "cbr", "bitrate": "2000", "max-bitrate": "2000"}),
            ("vaapih265", {"rate-control": "cbr", "bitrate": "2000"}),
            ("msdkh265", {"rate-control": "cbr", "bitrate": "2000"}),
        ],
    )
    def test_intel_and_vaapi_cbr(self, make_request, backend, expected):
        from h265split.planner import plan

        result = plan(make_request(backend=backend, compression_ratio=4), _estimate(bitrate=8000))
        assert result.args_dict() == expected


class TestQualityMode:
    """Duration estimated: fixed quality per ratio bucket."""

    @pytest.mark.parametrize(
        "ratio,crf",
        [(1, 18), (2, 22), (3, 26), (4, 26), (5, 28), (10, 32), (20, 38)],
    )
    def test_x265_crf_buckets(self, make_request, ratio, crf):
        from h265split.planner import RateControlMode, plan

        result = plan(make_request(compression_ratio=ratio), _estimate(estimated=True, bitrate=20000))

        assert result.mode is RateControlMode.QUALITY
        assert result.target_bitrate_kbps is None
        assert result.quality == crf
        assert result.backend_args == (
            ("speed-preset", "veryfast"),
            ("tune", "fastdecode"),
            ("option-string", f"crf={crf}"),
        )

    def test_bitrate_never_used_when_estimated(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(compression_ratio=2), _estimate(estimated=True, bitrate=800_000))

        assert "bitrate" not in result.args_dict()
        assert "vbv-maxrate" not in result.args_dict()["option-string"]

    def test_nvenc_constqp(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="nvh265", compression_ratio=10), _estimate(estimated=True))
        assert result.backend_args == (("rc-mode", "constqp"), ("qp-const", "32"))

    def test_qsv_icq(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="qsvh265", compression_ratio=2), _estimate(estimated=True))
        assert result.backend_args == (("rate-control", "icq"), ("icq-quality", "22"))

    def test_vaapi_cqp(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="vaapih265", compression_ratio=5), _estimate(estimated=True))
        assert result.backend_args == (("rate-control", "cqp"), ("init-qp", "28"))

    def test_msdk_icq(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="msdkh265", compression_ratio=1), _estimate(estimated=True))
        assert result.backend_args == (("rate-control", "icq"), ("qpi", "18"))

    def test_vtenc_normalized_quality(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="vtenc", compression_ratio=4), _estimate(estimated=True))

        assert result.quality == 0.5
        assert result.backend_args == (("quality", "0.500"), ("allow-frame-reordering", "true"))


class TestSpeedPresets:
    """Tests for speed preset mapping."""

    def test_x265_uses_preset(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(speed_preset="slow"), _estimate())
        assert result.args_dict()["speed-preset"] == "slow"

    def test_nvenc_preset(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="nvh265", speed_preset="slower"), _estimate())
        assert result.backend_args[-1] == ("preset", "hq")

    def test_qsv_target_usage(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="qsvh265", speed_preset="ultrafast"), _estimate(estimated=True))
        assert result.backend_args[-1] == ("target-usage", "7")

    def test_vaapi_quality_level(self, make_request):
        from h265split.planner import plan

        result = plan(make_request(backend="vaapih265", speed_preset="veryslow"), _estimate())
        assert result.backend_args[-1] == ("quality-level", "1")

    def test_vtenc_ignores_preset(self, make_request):
        from h265split.planner import plan

        with_preset = plan(make_request(backend="vtenc", speed_preset="fast"), _estimate())
        without = plan(make_request(backend="vtenc"), _estimate())
        assert with_preset.backend_args == without.backend_args


class TestPlanningErrors:
    """Requests no planner can handle."""

    def test_missing_ratio(self, make_request):
        from h265split.errors import PlanningError
        from h265split.planner import plan

        with pytest.raises(PlanningError):
            plan(make_request(compression_ratio=None), _estimate())

    def test_unsupported_ratio(self, make_request):
        from h265split.errors import PlanningError
        from h265split.planner import plan

        with pytest.raises(PlanningError):
            plan(make_request(compression_ratio=7), _estimate())

    def test_unknown_backend(self, make_request):
        from h265split.errors import PlanningError
        from h265split.planner import plan

        with pytest.raises(PlanningError):
            plan(make_request(backend="h264"), _estimate())

    def test_unknown_preset(self, make_request):
        from h265split.errors import PlanningError
        from h265split.planner import plan

        with pytest.raises(PlanningError):
            plan(make_request(speed_preset="warp"), _estimate())

    def test_validate_returns_ratio(self, make_request):
        from h265split.planner import validate_request

        assert validate_request(make_request(compression_ratio=10)) == 10

    def test_planning_error_not_retryable(self):
        from h265split.errors import PlanningError

        assert PlanningError("x").retryable is False


class TestHelpers:
    """Tests for rounding and bucket helpers."""

    @pytest.mark.parametrize("value,expected", [(2.5, 3), (3.5, 4), (2.4999, 2), (0.5, 1), (0, 0)])
    def test_round_half_up(self, value, expected):
        from h265split.planner import round_half_up

        assert round_half_up(value) == expected

    def test_quality_for_ratio(self):
        from h265split.planner import quality_for_ratio

        assert quality_for_ratio(1).normalized == 0.75
        assert quality_for_ratio(3).crf == 26
        assert quality_for_ratio(20).qp == 38
