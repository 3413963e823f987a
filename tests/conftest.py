'''
    Shared fixtures for the rotation tests
'''
import os

import pytest

from rotate_settings import Settings


@pytest.fixture
def source_dir(tmp_path):
    ''' A small directory tree to back up '''
    source = tmp_path / 'site'
    (source / 'static').mkdir(parents=True)
    (source / 'index.html').write_text('<h1>hello</h1>')
    (source / 'static' / 'app.css').write_text('body { margin: 0 }')
    return source


@pytest.fixture
def make_settings(tmp_path, source_dir):
    ''' Build Settings pointing at tmp_path, with overrides '''
    def factory(**overrides):
        values = {
            'name': 'site',
            'source_directory': str(source_dir),
            'destination_root': str(tmp_path / 'backups'),
        }
        values.update(overrides)
        return Settings(**values)
    return factory


class FakeProducer:
    ''' Stands in for produce_archive and records every call '''

    def __init__(self):
        self.calls = []

    def __call__(self, source_dir, artifact_path):
        self.calls.append(artifact_path)
        with open(artifact_path, 'wb') as f:
            f.write(b'archive of ' + os.fsencode(source_dir))
        return artifact_path


@pytest.fixture
def producer():
    return FakeProducer()
