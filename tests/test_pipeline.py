"""Tests for the conversion pipeline orchestrator."""

from __future__ import annotations

import asyncio
import json
import signal

import pytest

from slp_to_video.config import Settings
from slp_to_video.errors import BinaryNotFoundError
from slp_to_video.models.options import ConversionOptions
from slp_to_video.pipeline import (
    ConversionPipeline,
    PipelineState,
    compute_start_padding,
    convert,
)
from slp_to_video.types import FIRST_FRAME
from tests.conftest import FakeProcess

pytestmark = pytest.mark.unit

PLAYBACK_OUT = b"[CURRENT_FRAME] -123\n[CURRENT_FRAME] 300\n[CURRENT_FRAME] 599\n"
ENCODER_OUT = b"out_time_us=4000000\nprogress=continue\nout_time_us=8000000\nprogress=end\n"
ENCODER_ERR = b"  Duration: 00:00:08.50, start: 0.000000\n"


@pytest.fixture()
def make_pipeline(tmp_path, fake_binaries):
    workdir = tmp_path / "work"
    workdir.mkdir()

    def _factory(**overrides):
        metadata_reader = overrides.pop("metadata_reader", lambda path: 600)
        options = ConversionOptions.with_defaults(
            input_file=str(tmp_path / "game.slp"),
            workdir=str(workdir),
            melee_iso=str(tmp_path / "SSBM.iso"),
            dolphin_path=str(fake_binaries.dolphin),
            ffmpeg_path=str(fake_binaries.ffmpeg),
            output_filename=str(tmp_path / "out.mp4"),
            **overrides,
        )
        return ConversionPipeline(options, settings=Settings(), metadata_reader=metadata_reader)

    return _factory


class Recorder:
    """Collects every pipeline event in arrival order."""

    def __init__(self, pipeline: ConversionPipeline) -> None:
        self.events: list[tuple] = []
        pipeline.on_playback_progress(lambda *a: self.events.append(("playback_progress", *a)))
        pipeline.on_playback_exit(lambda c: self.events.append(("playback_exit", c)))
        pipeline.on_encoder_progress(lambda *a: self.events.append(("encoder_progress", *a)))
        pipeline.on_encoder_exit(lambda c: self.events.append(("encoder_exit", c)))
        pipeline.on_done(lambda c: self.events.append(("done", c)))

    def of(self, kind: str) -> list[tuple]:
        return [e[1:] for e in self.events if e[0] == kind]


async def _until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestComputeStartPadding:
    def test_default_padding(self):
        assert compute_start_padding(200, 120) == (80, 2.0)

    def test_floored_at_first_frame(self):
        start, cutoff = compute_start_padding(-100, 120)
        assert start == FIRST_FRAME
        assert cutoff == pytest.approx(23 / 60)

    def test_zero_padding(self):
        assert compute_start_padding(200, 0) == (200, 0.0)

    def test_no_start_frame(self):
        assert compute_start_padding(None, 120) == (None, None)

    @pytest.mark.parametrize("start", [-123, -50, 0, 1, 119, 120, 5000])
    @pytest.mark.parametrize("padding", [0, 1, 60, 120, 500])
    def test_properties(self, start, padding):
        effective, cutoff = compute_start_padding(start, padding)
        assert effective == max(FIRST_FRAME, start - padding)
        assert cutoff == (start - effective) / 60
        assert cutoff >= 0


class TestConstruction:
    def test_missing_dolphin_fails_fast(self, tmp_path, fake_binaries, fake_exec):
        options = ConversionOptions(workdir=str(tmp_path), ffmpeg_path=str(fake_binaries.ffmpeg))
        with pytest.raises(BinaryNotFoundError, match="playback dolphin"):
            ConversionPipeline(
                options,
                settings=Settings(),
                dolphin_resolver=lambda settings: None,
                metadata_reader=lambda path: None,
            )
        assert fake_exec.spawned == []

    def test_missing_ffmpeg_fails_fast(self, tmp_path, fake_binaries):
        options = ConversionOptions(workdir=str(tmp_path), dolphin_path=str(fake_binaries.dolphin))
        with pytest.raises(BinaryNotFoundError, match="ffmpeg"):
            ConversionPipeline(
                options,
                settings=Settings(),
                ffmpeg_resolver=lambda settings: None,
                metadata_reader=lambda path: None,
            )

    def test_resolvers_used_when_paths_unset(self, tmp_path):
        options = ConversionOptions(workdir=str(tmp_path))
        pipeline = ConversionPipeline(
            options,
            settings=Settings(),
            dolphin_resolver=lambda settings: tmp_path / "dolphin",
            ffmpeg_resolver=lambda settings: tmp_path / "ffmpeg",
            metadata_reader=lambda path: None,
        )
        assert pipeline.dolphin_path == tmp_path / "dolphin"
        assert pipeline.ffmpeg_path == tmp_path / "ffmpeg"
        assert pipeline.state is PipelineState.IDLE

    @pytest.mark.parametrize(("field", "label"), [
        ("dolphin_path", "playback dolphin"),
        ("ffmpeg_path", "ffmpeg"),
    ])
    def test_explicit_path_must_exist(self, tmp_path, fake_binaries, fake_exec, monkeypatch, field, label):
        monkeypatch.setattr("shutil.which", lambda name: None)
        paths = {"dolphin_path": str(fake_binaries.dolphin), "ffmpeg_path": str(fake_binaries.ffmpeg)}
        paths[field] = str(tmp_path / "nope")
        options = ConversionOptions(workdir=str(tmp_path), **paths)
        with pytest.raises(BinaryNotFoundError, match=label):
            ConversionPipeline(options, settings=Settings(), metadata_reader=lambda path: None)
        assert fake_exec.spawned == []

    def test_explicit_command_name_found_on_path(self, tmp_path, fake_binaries, monkeypatch):
        monkeypatch.setattr("shutil.which", lambda name: f"/usr/bin/{name}" if name == "ffmpeg" else None)
        options = ConversionOptions(
            workdir=str(tmp_path), dolphin_path=str(fake_binaries.dolphin), ffmpeg_path="ffmpeg"
        )
        pipeline = ConversionPipeline(options, settings=Settings(), metadata_reader=lambda path: None)
        assert pipeline.ffmpeg_path.as_posix() == "/usr/bin/ffmpeg"

    def test_relative_explicit_path_resolved(self, tmp_path, fake_binaries, monkeypatch):
        monkeypatch.chdir(fake_binaries.dolphin.parent)
        options = ConversionOptions(
            workdir=str(tmp_path), dolphin_path="dolphin", ffmpeg_path=str(fake_binaries.ffmpeg)
        )
        pipeline = ConversionPipeline(options, settings=Settings(), metadata_reader=lambda path: None)
        assert pipeline.dolphin_path == fake_binaries.dolphin

    def test_encoder_targets_playback_dumps(self, make_pipeline):
        pipeline = make_pipeline()
        assert pipeline.encoder.video_file == pipeline.playback.video_dump_file
        assert pipeline.encoder.audio_file == pipeline.playback.audio_dump_file


class TestHappyPath:
    async def test_playback_then_encode(self, make_pipeline, fake_exec, tmp_path):
        """Playback exits 0, ffmpeg runs against the dumps, done fires with 0."""
        fake_exec.queue.append(FakeProcess(stdout=PLAYBACK_OUT, returncode=0))
        fake_exec.queue.append(FakeProcess(stdout=ENCODER_OUT, stderr=ENCODER_ERR, returncode=0))
        pipeline = make_pipeline()
        rec = Recorder(pipeline)

        assert await asyncio.wait_for(pipeline.run(), 2) == 0

        assert pipeline.state is PipelineState.DONE
        assert rec.of("playback_progress") == [
            (-123, FIRST_FRAME, 600),
            (300, FIRST_FRAME, 600),
            (599, FIRST_FRAME, 600),
        ]
        assert rec.of("encoder_progress")[-1] == (8000, 0, 8000)
        assert rec.of("playback_exit") == [(0,)]
        assert rec.of("encoder_exit") == [(0,)]
        assert rec.of("done") == [(0,)]
        assert rec.events[-1] == ("done", 0)

        ffmpeg_args = fake_exec.spawned[1].args
        assert ffmpeg_args[0] == str(pipeline.ffmpeg_path)
        assert str(tmp_path / "work" / "framedump0.avi") in ffmpeg_args
        assert str(tmp_path / "work" / "dspdump.wav") in ffmpeg_args

    async def test_encoder_failure_is_done_code(self, make_pipeline, fake_exec):
        fake_exec.queue.append(FakeProcess(returncode=0))
        fake_exec.queue.append(FakeProcess(returncode=1))
        pipeline = make_pipeline()
        rec = Recorder(pipeline)
        assert await asyncio.wait_for(pipeline.run(), 2) == 1
        assert pipeline.state is PipelineState.DONE
        assert rec.of("done") == [(1,)]

    async def test_padded_start(self, make_pipeline, fake_exec, tmp_path):
        fake_exec.queue.append(FakeProcess(returncode=0))
        fake_exec.queue.append(FakeProcess(returncode=0))
        pipeline = make_pipeline(start_frame=200, end_frame=500)
        await asyncio.wait_for(pipeline.run(), 2)

        descriptor = json.loads((tmp_path / "work" / "input.json").read_text())
        assert descriptor["queue"][0]["startFrame"] == 80
        assert descriptor["queue"][0]["endFrame"] == 500
        ffmpeg_args = fake_exec.spawned[1].args
        assert ffmpeg_args[ffmpeg_args.index("-ss") + 1] == "2.000"
        assert pipeline.playback.progress_start == 80
        assert pipeline.playback.progress_end == 501

    async def test_explicit_zero_padding_kept(self, make_pipeline):
        pipeline = make_pipeline(start_frame=200, start_padding_frames=0)
        assert pipeline.playback_start_frame == 200
        assert pipeline.start_cutoff_seconds == 0.0
        assert "-ss" not in pipeline.encoder.command_args()

    async def test_convert_helper(self, make_pipeline, fake_exec, tmp_path):
        fake_exec.queue.append(FakeProcess(returncode=0))
        fake_exec.queue.append(FakeProcess(returncode=0))
        options = make_pipeline().options
        code = await convert(options, settings=Settings(), metadata_reader=lambda path: None)
        assert code == 0


class TestPlaybackFailure:
    async def test_encoder_never_spawned(self, make_pipeline, fake_exec):
        """Playback exit 1 → done(1), no encoder spawn, no encoder progress."""
        fake_exec.queue.append(FakeProcess(stdout=b"[CURRENT_FRAME] 10\n", returncode=1))
        pipeline = make_pipeline()
        rec = Recorder(pipeline)

        assert await asyncio.wait_for(pipeline.run(), 2) == 1
        await asyncio.sleep(0.01)

        assert pipeline.state is PipelineState.FAILED
        assert len(fake_exec.spawned) == 1
        assert rec.of("encoder_progress") == []
        assert rec.of("encoder_exit") == []
        assert rec.of("done") == [(1,)]
        assert rec.events[-1] == ("done", 1)
        assert pipeline.failed_stage == "dolphin"

    async def test_signal_death_fails_pipeline(self, make_pipeline, fake_exec):
        fake_exec.queue.append(FakeProcess(returncode=-9))
        pipeline = make_pipeline()
        assert await asyncio.wait_for(pipeline.run(), 2) is None
        assert pipeline.state is PipelineState.FAILED
        assert len(fake_exec.spawned) == 1

    async def test_encoder_spawn_failure_blames_ffmpeg(self, make_pipeline, fake_exec):
        def _vanished():
            raise FileNotFoundError(2, "No such file or directory")

        fake_exec.queue.extend([FakeProcess(returncode=0), _vanished])
        pipeline = make_pipeline()
        rec = Recorder(pipeline)

        assert await asyncio.wait_for(pipeline.run(), 2) is None
        assert pipeline.state is PipelineState.FAILED
        assert pipeline.failed_stage == "ffmpeg"
        assert rec.of("done") == [(None,)]


class TestKill:
    async def test_kill_during_playback(self, make_pipeline, fake_exec):
        playback = FakeProcess()
        fake_exec.queue.append(playback)
        pipeline = make_pipeline()
        rec = Recorder(pipeline)
        await pipeline.start()

        pipeline.kill()
        pipeline.kill()
        pipeline.kill()

        assert await asyncio.wait_for(pipeline.wait(), 2) is None
        assert pipeline.state is PipelineState.KILLED
        assert rec.of("done") == [(None,)]
        assert playback.signals == [signal.SIGTERM]

    async def test_killed_pipeline_skips_encoder_even_on_clean_exit(self, make_pipeline, fake_exec):
        """Dolphin exiting 0 after a kill must not start ffmpeg."""
        playback = FakeProcess(signal_returncode=0)
        fake_exec.queue.append(playback)
        pipeline = make_pipeline()
        rec = Recorder(pipeline)
        await pipeline.start()

        pipeline.kill()
        await asyncio.wait_for(pipeline._playback_process.wait(), 2)
        await asyncio.sleep(0.01)

        assert rec.of("playback_exit") == [(0,)]
        assert len(fake_exec.spawned) == 1
        assert rec.of("done") == [(None,)]

    async def test_kill_during_encoding(self, make_pipeline, fake_exec):
        playback = FakeProcess(returncode=0)
        encoder = FakeProcess(stdout=b"out_time_us=1000000\n")
        fake_exec.queue.extend([playback, encoder])
        pipeline = make_pipeline()
        rec = Recorder(pipeline)
        await pipeline.start()
        await _until(lambda: pipeline.state is PipelineState.ENCODING_RUNNING and pipeline._encoder_process)

        pipeline.kill()

        assert await asyncio.wait_for(pipeline.wait(), 2) is None
        assert encoder.signals == [signal.SIGTERM]
        assert playback.signals == []
        assert rec.of("done") == [(None,)]

    async def test_kill_before_start(self, make_pipeline, fake_exec):
        pipeline = make_pipeline()
        done = []
        pipeline.on_done(done.append)
        pipeline.kill()
        await pipeline.start()
        assert await pipeline.wait() is None
        assert fake_exec.spawned == []
        assert done == [None]

    async def test_kill_after_done_is_noop(self, make_pipeline, fake_exec):
        fake_exec.queue.append(FakeProcess(returncode=0))
        fake_exec.queue.append(FakeProcess(returncode=0))
        pipeline = make_pipeline()
        rec = Recorder(pipeline)
        await asyncio.wait_for(pipeline.run(), 2)
        pipeline.kill()
        assert pipeline.state is PipelineState.DONE
        assert rec.of("done") == [(0,)]


class TestTimeout:
    async def test_global_timeout_kills(self, make_pipeline, fake_exec):
        playback = FakeProcess()
        fake_exec.queue.append(playback)
        pipeline = make_pipeline(timeout=0.1)
        rec = Recorder(pipeline)

        assert await asyncio.wait_for(pipeline.run(), 2) is None

        assert pipeline.state is PipelineState.KILLED
        assert playback.signals == [signal.SIGTERM]
        assert rec.of("done") == [(None,)]

    async def test_timeout_cancelled_after_done(self, make_pipeline, fake_exec):
        fake_exec.queue.append(FakeProcess(returncode=0))
        fake_exec.queue.append(FakeProcess(returncode=0))
        pipeline = make_pipeline(timeout=0.1)
        rec = Recorder(pipeline)
        assert await asyncio.wait_for(pipeline.run(), 2) == 0
        await asyncio.sleep(0.2)
        assert pipeline.state is PipelineState.DONE
        assert rec.of("done") == [(0,)]

    async def test_stage_timeout_fails_pipeline(self, make_pipeline, fake_exec):
        """Dolphin's own deadline surfaces as a failed playback stage."""
        playback = FakeProcess()
        fake_exec.queue.append(playback)
        pipeline = make_pipeline(dolphin_timeout=0.05)
        assert await asyncio.wait_for(pipeline.run(), 2) is None
        assert pipeline.state is PipelineState.FAILED
        assert playback.signals == [signal.SIGTERM]
