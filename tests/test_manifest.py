"""Tests for the export manifest loader."""

import tempfile

import pytest
import yaml

from clipstitch.manifest import load_export_manifest, validate_manifest_sources
from clipstitch.models import Transition


def _write_manifest(content: dict) -> str:
    """Write a manifest dict to a temp YAML file, return path."""
    f = tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False)
    yaml.dump(content, f)
    f.close()
    return f.name


def _clip(**overrides):
    c = {"source": "${renders}/scene-01.mp4", "scene": 1, "duration": 5.0}
    c.update(overrides)
    return c


def _minimal_manifest(**overrides):
    m = {
        "paths": {"renders": "/data/renders"},
        "clips": [_clip()],
    }
    m.update(overrides)
    return m


class TestLoadExportManifest:
    def test_resolves_path_variables(self):
        config = load_export_manifest(_write_manifest(_minimal_manifest()))
        assert config["clips"][0].source == "/data/renders/scene-01.mp4"

    def test_defaults(self):
        config = load_export_manifest(_write_manifest(_minimal_manifest()))
        clip = config["clips"][0]
        options = config["options"]
        assert clip.trim_start == 0.0
        assert clip.trim_end is None
        assert clip.mute is False
        assert clip.transition_out is None
        assert options.output_format == "mp4"
        assert options.remove_silence is False
        assert options.audio_track is None

    def test_keeps_manifest_order(self):
        m = _minimal_manifest(clips=[_clip(scene=2), _clip(scene=1)])
        config = load_export_manifest(_write_manifest(m))
        assert [c.scene_number for c in config["clips"]] == [2, 1]

    def test_transition_dict(self):
        m = _minimal_manifest(clips=[
            _clip(transition={"type": "dissolve", "duration": 0.8}),
            _clip(scene=2),
        ])
        config = load_export_manifest(_write_manifest(m))
        assert config["clips"][0].transition_out == Transition("dissolve", 0.8)

    def test_transition_true_uses_output_default(self):
        m = _minimal_manifest(
            output={"transition": {"type": "wipeleft", "duration": 1.2}},
            clips=[_clip(transition=True), _clip(scene=2, transition="fade")],
        )
        config = load_export_manifest(_write_manifest(m))
        assert config["clips"][0].transition_out == Transition("wipeleft", 1.2)
        assert config["clips"][1].transition_out == Transition("fade", 1.2)

    def test_audio_track(self):
        m = _minimal_manifest(audio={
            "source": "${renders}/music.mp3", "offset_ms": -2000, "volume": 0.6,
        })
        track = load_export_manifest(_write_manifest(m))["options"].audio_track
        assert track.source == "/data/renders/music.mp3"
        assert track.offset_ms == -2000
        assert track.volume == 0.6

    def test_output_settings(self):
        m = _minimal_manifest(output={"format": "mkv", "remove_silence": True})
        options = load_export_manifest(_write_manifest(m))["options"]
        assert options.output_format == "mkv"
        assert options.remove_silence is True


class TestExportManifestValidation:
    def test_missing_clips_raises(self):
        with pytest.raises(ValueError, match="missing required 'clips' list"):
            load_export_manifest(_write_manifest({"paths": {}}))

    def test_clip_missing_duration_raises(self):
        c = _clip()
        del c["duration"]
        with pytest.raises(ValueError, match="Clip 0: missing required field 'duration'"):
            load_export_manifest(_write_manifest(_minimal_manifest(clips=[c])))

    def test_scene_must_be_integer(self):
        m = _minimal_manifest(clips=[_clip(scene="one")])
        with pytest.raises(ValueError, match="'scene' must be an integer"):
            load_export_manifest(_write_manifest(m))

    def test_trim_past_duration_raises(self):
        m = _minimal_manifest(clips=[_clip(trim_end=9.0)])
        with pytest.raises(ValueError, match="exceeds duration"):
            load_export_manifest(_write_manifest(m))

    def test_unknown_transition_raises(self):
        m = _minimal_manifest(clips=[_clip(transition="spin")])
        with pytest.raises(ValueError, match="invalid transition type 'spin'"):
            load_export_manifest(_write_manifest(m))

    def test_invalid_format_raises(self):
        m = _minimal_manifest(output={"format": "webm"})
        with pytest.raises(ValueError, match="invalid output.format 'webm'"):
            load_export_manifest(_write_manifest(m))

    def test_audio_without_source_raises(self):
        m = _minimal_manifest(audio={"volume": 0.5})
        with pytest.raises(ValueError, match="audio requires a 'source'"):
            load_export_manifest(_write_manifest(m))

    def test_unknown_path_variable_raises(self):
        m = _minimal_manifest(clips=[_clip(source="${nowhere}/a.mp4")])
        with pytest.raises(ValueError, match="Unknown path variable"):
            load_export_manifest(_write_manifest(m))


class TestValidateManifestSources:
    def test_existing_sources_pass(self, tmp_path):
        (tmp_path / "scene-01.mp4").write_bytes(b"x")
        m = _minimal_manifest(paths={"renders": str(tmp_path)})
        validate_manifest_sources(load_export_manifest(_write_manifest(m)))

    def test_urls_skipped(self):
        m = _minimal_manifest(clips=[_clip(source="https://cdn.test/a.mp4")])
        validate_manifest_sources(load_export_manifest(_write_manifest(m)))

    def test_missing_sources_listed(self, tmp_path):
        m = _minimal_manifest(
            paths={"renders": str(tmp_path)},
            audio={"source": "${renders}/music.mp3"},
        )
        config = load_export_manifest(_write_manifest(m))
        with pytest.raises(FileNotFoundError, match="Missing 2 source file"):
            validate_manifest_sources(config)
