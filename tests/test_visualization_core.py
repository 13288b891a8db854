from __future__ import annotations

import json
import os

import pytest

import stable_marriage_example
import visualization_core
from matching_core import export_matching_run
from visualization_core import run_to_dot, visualize_matching_run, visualize_runs_from_file


@pytest.fixture
def run_data(three_by_three):
    return export_matching_run(run_id='demo', graph=three_by_three, graph_metadata={'layout_seed': 1})


def test_one_frame_per_step(run_data, tmp_path):
    files = visualize_matching_run(run_data, str(tmp_path / 'frames'))

    assert len(files) == len(run_data['matching_history']) == 5
    assert all(os.path.exists(path) for path in files)
    assert os.path.basename(files[0]) == 'stage_000.png'


def test_existing_frames_are_kept(run_data, tmp_path):
    out = tmp_path / 'frames'
    out.mkdir()
    (out / 'stage_000.png').write_bytes(b'placeholder')

    files = visualize_matching_run(run_data, str(out))

    assert len(files) == 5
    assert (out / 'stage_000.png').read_bytes() == b'placeholder'


def test_final_frame_without_history(run_data, tmp_path):
    run_data = dict(run_data, matching_history=[])
    positions = {str(i): [float(i), 0.0] for i in range(6)}

    files = visualize_matching_run(
        dict(run_data, node_positions=positions),
        str(tmp_path),
        figure_format='svg',
        show_preferences=False,
    )

    assert [os.path.basename(path) for path in files] == ['stage_000.svg']


def test_visualize_runs_from_file(run_data, tmp_path):
    json_path = tmp_path / 'runs.json'
    json_path.write_text(json.dumps([run_data, dict(run_data, run_id='other')]))

    outputs = visualize_runs_from_file(str(json_path), str(tmp_path / 'out'))

    assert sorted(outputs) == ['demo', 'other']
    assert all(len(files) == 5 for files in outputs.values())
    assert os.path.isdir(tmp_path / 'out' / 'run_demo')


def test_run_to_dot(run_data):
    dot = run_to_dot(run_data)

    assert dot.startswith('digraph G {\n')
    assert dot.endswith('}\n')
    assert '"0"[label="0",color="blue"];' in dot
    assert '"3"[label="3",color="pink"];' in dot
    assert '"0"->"4" [color="red", label="4"];' in dot
    assert '"4"->"0" [color="red", label="4"];' in dot
    assert '"0"->"3" [color="black", label="1"];' in dot
    assert dot.count('color="red"') == 6


def test_run_to_dot_for_a_stage(run_data):
    dot = run_to_dot(run_data, stage=0)

    assert dot.count('color="red"') == 2
    assert '"0"->"4" [color="red", label="4"];' in dot


def test_example_prints_dot(capsys):
    assert stable_marriage_example.main([]) == 0

    out = capsys.readouterr().out
    assert out.startswith('digraph G {')
    assert '"2"->"3" [color="red", label="4"];' in out


def test_example_saves_and_renders(tmp_path, capsys):
    json_path = tmp_path / 'runs.json'
    render_dir = tmp_path / 'frames'

    stable_marriage_example.main(['--json', str(json_path), '--render-dir', str(render_dir), '--run-id', 'x'])

    runs = json.loads(json_path.read_text())
    assert runs[0]['run_id'] == 'x'
    assert sorted(runs[0]['pairs']) == [['0', '4'], ['1', '5'], ['2', '3']]
    assert len(os.listdir(render_dir)) == 5


def test_run_to_dot_escapes_quotes(three_by_three):
    run_data = export_matching_run(run_id='q', graph=three_by_three, node_labels={0: 'a"b'})

    dot = run_to_dot(run_data)

    assert '"a\\"b"[label="a\\"b",color="blue"];' in dot
    assert '"a\\"b"->"4" [color="red", label="4"];' in dot


def test_runs_from_file_pass_render_options(run_data, tmp_path, monkeypatch):
    json_path = tmp_path / 'runs.json'
    json_path.write_text(json.dumps(run_data))
    calls = []

    def fake_visualize(data, output_dir, **kwargs):
        calls.append((output_dir, kwargs))
        return []

    monkeypatch.setattr(visualization_core, 'visualize_matching_run', fake_visualize)

    outputs = visualize_runs_from_file(str(json_path), str(tmp_path / 'out'), show_preferences=False)

    assert outputs == {'demo': []}
    assert calls[0][0] == os.path.join(str(tmp_path / 'out'), 'run_demo')
    assert calls[0][1]['show_preferences'] is False
