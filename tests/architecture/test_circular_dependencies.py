import importlib

import pytest

# Modules in dependency order: each imports only modules above it
MODULES = [
    'sqlbind.exceptions',
    'sqlbind.wire.constants',
    'sqlbind.wire.descriptor',
    'sqlbind.wire.codec',
    'sqlbind.wire.protocol',
    'sqlbind.wire',
    'sqlbind.types',
    'sqlbind.binding.binders',
    'sqlbind.binding.bindset',
    'sqlbind.binding',
    'sqlbind.utils',
    'sqlbind.options',
    'sqlbind.results',
    'sqlbind.statement',
    'sqlbind.loopback',
    'sqlbind.connection',
    'sqlbind',
]


@pytest.mark.parametrize('module', MODULES)
def test_module_imports(module):
    """Test if modules can be imported without circular dependencies"""
    assert importlib.import_module(module) is not None


def test_statement_does_not_import_connection():
    """Statements talk to the connection only through the objects they are given"""
    statement = importlib.import_module('sqlbind.statement')
    assert not hasattr(statement, 'Connection')
    assert not hasattr(statement, 'connect')


if __name__ == '__main__':
    __import__('pytest').main([__file__])
