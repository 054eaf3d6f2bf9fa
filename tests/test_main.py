import numpy as np
import pytest

from image_surf import RESULT_FIELDS
from main import build_parser, main


@pytest.mark.integration
class TestCommandLine:
    def test_defaults(self):
        args = build_parser().parse_args(['image.bmp'])
        assert args.max_points == 1000
        assert args.detection_threshold == 30.0
        assert args.workers == 1

    def test_writes_result_file(self, blob_bmp, tmp_path, capsys):
        output = tmp_path / 'result.npz'
        assert main([blob_bmp, '--detection-threshold', '100', '--output', str(output)]) == 0
        assert '1 SURF points found' in capsys.readouterr().out

        with np.load(output) as saved:
            assert set(saved.files) == set(RESULT_FIELDS)
            assert int(saved['points']) == 1
            assert saved['surf'].shape == (1, 64)

    def test_match_option(self, four_blob_bmp, capsys):
        assert main([four_blob_bmp, '--detection-threshold', '100', '--match', four_blob_bmp]) == 0
        assert '4 matches between' in capsys.readouterr().out

    def test_bad_extension(self, tmp_path, capsys):
        assert main([str(tmp_path / 'image.png')]) == 2
        assert 'Error' in capsys.readouterr().err

    def test_bad_config(self, blob_bmp, capsys):
        assert main([blob_bmp, '--layers', '2']) == 2
        assert 'Error' in capsys.readouterr().err
