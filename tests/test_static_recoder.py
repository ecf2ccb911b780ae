from io import BytesIO

import pytest
from PIL import Image

from recompressor import static_recoder
from recompressor.config import RecodeConfig
from recompressor.errors import AttemptsExhausted, BudgetUnreachable, DecodeFailed, EncodeOutOfMemory
from recompressor.models import ImageSource
from recompressor.orientation import orientation_for_code
from recompressor.policy import RecodeParams
from recompressor.static_recoder import (
    RecodeState,
    decode_image,
    encode_jpeg,
    minimum_scale_factor,
    recode_static_image,
    transform_image,
)
from conftest import gradient_image, noise_image, open_image, to_jpeg


@pytest.fixture
def fake_encoder(monkeypatch):
    """Deterministic encoder: one byte per pixel at quality 100."""
    calls = []

    def encode(img, quality, oom_retries=1):
        calls.append((img.width, img.height, quality))
        return b'\0' * (img.width * img.height * quality // 100)

    monkeypatch.setattr(static_recoder, 'encode_jpeg', encode)
    return calls


def test_image_that_already_fits_is_returned_unchanged(smooth_jpeg):
    data = smooth_jpeg(200, 100)
    result = recode_static_image(data, 1024, 1024, len(data) + 1)
    assert result.ok
    assert result.data == data
    assert result.attempts == 0


def test_quality_reduction_reaches_budget(noisy_jpeg, fake_encoder):
    data = noisy_jpeg(400, 300)
    result = recode_static_image(data, 400, 300, 80_000)
    assert result.ok
    assert result.attempts == 4
    assert [q for _, _, q in fake_encoder] == [95, 79, 67, 56]
    assert len(result.data) == 67_200


def test_scale_then_subsample_fallback(noisy_jpeg, fake_encoder):
    data = noisy_jpeg(400, 300)
    result = recode_static_image(data, 0, 0, 30_000, max_attempts=8)
    assert result.ok
    assert fake_encoder == [
        (400, 300, 95),
        (400, 300, 50),
        (300, 225, 95),
        (300, 225, 64),
        (300, 225, 53),
        (300, 225, 50),
        (200, 150, 95),
    ]
    assert len(result.data) == 28_500


def test_attempts_exhausted_keeps_smallest_output(noisy_jpeg, fake_encoder):
    data = noisy_jpeg(400, 300)
    result = recode_static_image(data, 0, 0, 30_000, max_attempts=6)
    assert not result.ok
    assert isinstance(result.error, AttemptsExhausted)
    assert result.attempts == 6
    assert len(result.best_effort) == 33_750
    with pytest.raises(AttemptsExhausted):
        result.raise_for_error()


def test_out_of_memory_on_every_attempt(noisy_jpeg, monkeypatch):
    def encode(img, quality, oom_retries=1):
        raise EncodeOutOfMemory('no memory')

    monkeypatch.setattr(static_recoder, 'encode_jpeg', encode)
    result = recode_static_image(noisy_jpeg(400, 300), 0, 0, 10_000, max_attempts=3)
    assert isinstance(result.error, EncodeOutOfMemory)
    assert result.attempts == 3
    assert result.best_effort is None


def test_memory_error_during_decode_is_retried(noisy_jpeg, monkeypatch, fake_encoder):
    real_decode = static_recoder.decode_image
    failures = []

    def flaky_decode(data, subsample=1):
        if not failures:
            failures.append(subsample)
            raise MemoryError
        return real_decode(data, subsample)

    monkeypatch.setattr(static_recoder, 'decode_image', flaky_decode)
    result = recode_static_image(noisy_jpeg(400, 300), 0, 0, 80_000, start_quality=60)
    assert result.ok
    assert result.attempts == 2
    assert fake_encoder == [(400, 300, 60)]


def test_large_photo_terminates_within_attempts(noisy_jpeg):
    data = noisy_jpeg(4000, 3000)
    result = recode_static_image(data, 1024, 1024, 65536)
    assert result.attempts <= 6
    if result.ok:
        assert len(result.data) <= 65536
        assert max(open_image(result.data).size) <= 1024
    else:
        assert isinstance(result.error, AttemptsExhausted)


def test_dimension_limits_are_enforced(smooth_jpeg):
    data = smooth_jpeg(1600, 1200)
    result = recode_static_image(data, 640, 640, 500_000)
    assert result.ok
    img = open_image(result.data)
    assert img.format == 'JPEG'
    assert img.size == (640, 480)


def test_rotated_source_is_written_upright(smooth_jpeg):
    data = smooth_jpeg(300, 200, orientation=6)
    result = recode_static_image(data, 100, 1000, 500_000)
    assert result.ok
    img = open_image(result.data)
    assert img.size == (100, 150)
    assert 274 not in img.getexif()


def test_corrupt_bytes_fail_to_decode():
    result = recode_static_image(b'not an image at all', 100, 100, 10)
    assert isinstance(result.error, DecodeFailed)


def test_truncated_stream_fails_without_retry(noisy_jpeg):
    data = noisy_jpeg(400, 300)[:2000]
    result = recode_static_image(data, 0, 0, 1000)
    assert isinstance(result.error, DecodeFailed)
    assert result.attempts == 1


def test_unreachable_budget_skips_decoding(noisy_jpeg, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError('decode should not run')

    monkeypatch.setattr(static_recoder, 'decode_image', fail)
    config = RecodeConfig(working_memory_bytes=0)
    result = recode_static_image(noisy_jpeg(400, 300), 0, 0, 10_000, config=config)
    assert isinstance(result.error, BudgetUnreachable)
    assert result.attempts == 0


def test_decode_subsamples_jpeg(noisy_jpeg):
    img = decode_image(noisy_jpeg(400, 300), 4)
    assert img.size == (100, 75)
    assert img.mode == 'RGB'


def test_decode_subsamples_png_and_flattens_alpha():
    rgba = noise_image(64, 32).convert('RGBA')
    buf = BytesIO()
    rgba.save(buf, format='PNG')
    img = decode_image(buf.getvalue(), 2)
    assert img.size == (32, 16)
    assert img.mode == 'RGB'


def encode(img, fmt='PNG'):
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.mark.parametrize('mode,fmt', [
    ('P', 'PNG'),
    ('1', 'PNG'),
    ('L', 'PNG'),
    ('CMYK', 'TIFF'),
])
def test_decode_subsamples_any_raster_mode(mode, fmt):
    source = noise_image(64, 32)
    source = source.quantize(16) if mode == 'P' else source.convert(mode)
    img = decode_image(encode(source, fmt), 2)
    assert img.size == (32, 16)
    assert img.mode == 'RGB'


def test_decode_tiny_jpeg_accounts_for_rounded_draft():
    # 10px at 1/8 drafts to 2px, nothing left to reduce
    assert decode_image(to_jpeg(noise_image(10, 10)), 8).size == (2, 2)
    assert static_recoder._drafted_scale(10, 2) == 8
    assert static_recoder._drafted_scale(400, 100) == 4
    assert static_recoder._drafted_scale(64, 64) == 1


@pytest.mark.parametrize('mode', ['P', '1'])
def test_large_palette_and_bilevel_images_fit(mode):
    source = gradient_image(3000, 3000)
    if mode == 'P':
        source = source.quantize(16, dither=Image.Dither.NONE)
    else:
        source = source.convert('1', dither=Image.Dither.NONE)

    result = recode_static_image(encode(source), 1024, 1024, 65536)

    assert result.ok
    assert len(result.data) <= 65536
    img = open_image(result.data)
    assert img.format == 'JPEG'
    assert max(img.size) <= 1024


def test_minimum_scale_factor():
    assert minimum_scale_factor(2048, 1024, 1024, 1024) == 2.0
    assert minimum_scale_factor(1000, 3000, 1000, 1000) == 3.0
    assert minimum_scale_factor(5000, 100, 0, 1000) == 1.0


def test_transform_swaps_dimensions_before_scaling():
    img = noise_image(300, 200)
    assert transform_image(img, orientation_for_code(6), 1.0).size == (200, 300)
    assert transform_image(img, orientation_for_code(6), 2.0).size == (100, 150)
    assert transform_image(img, orientation_for_code(1), 2.0).size == (150, 100)


def test_transform_passes_upright_unscaled_image_through():
    img = noise_image(10, 10)
    assert transform_image(img, orientation_for_code(1), 1.0) is img
    assert transform_image(img, orientation_for_code(2), 1.0) is not img


def test_encode_retries_once_after_memory_error():
    class Flaky:
        width = height = 1

        def __init__(self, failures):
            self.failures = failures

        def save(self, buf, **params):
            if self.failures:
                self.failures -= 1
                raise MemoryError
            buf.write(b'jpeg')

    assert encode_jpeg(Flaky(1), 90, oom_retries=1) == b'jpeg'
    with pytest.raises(EncodeOutOfMemory):
        encode_jpeg(Flaky(2), 90, oom_retries=1)


def test_encode_is_deterministic():
    img = noise_image(64, 64)
    assert encode_jpeg(img, 95) == encode_jpeg(img, 95)


class Buffer:
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


def test_aliased_buffer_is_released_once():
    buffer = Buffer()
    with RecodeState(RecodeParams(95)) as state:
        state.decoded = buffer
        state.scaled = buffer
    assert buffer.closed == 1
    assert state.decoded is None and state.scaled is None


def test_release_scaled_keeps_decoded():
    decoded, scaled = Buffer(), Buffer()
    state = RecodeState(RecodeParams(95))
    state.decoded, state.scaled = decoded, scaled
    state.release_scaled()
    assert scaled.closed == 1 and decoded.closed == 0
    assert state.decoded is decoded
    state.release()
    assert decoded.closed == 1 and scaled.closed == 1


def test_image_source_reads_header_lazily(smooth_jpeg):
    source = ImageSource(smooth_jpeg(300, 200, orientation=8))
    assert (source.width, source.height) == (300, 200)
    assert source.oriented_size == (200, 300)
    assert source.orientation.rotation_degrees == 270
    assert source.fits(len(source), 200, 300)
    assert not source.fits(len(source), 300, 200)
