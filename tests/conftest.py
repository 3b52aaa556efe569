"""Pytest configuration for lab control-plane tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports without an editable install
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest


@pytest.fixture
def template_dir(tmp_path):
    """A minimal IaC template directory."""
    template = tmp_path / 'template'
    template.mkdir()
    (template / 'main.tf').write_text('# lab template\n')
    (template / 'terraform.tfvars.json').write_text('{"stale": true}')
    return template
