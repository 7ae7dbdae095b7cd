#!/usr/bin/env python3
"""
Setup script for the Catalog Admin Console.
Installs the form_engine package and the Streamlit entry script.
"""

from pathlib import Path
from setuptools import setup


def read_requirements(filename='requirements.txt'):
    """Read package requirements, skipping comments and blank lines."""
    path = Path(__file__).parent / filename
    if not path.exists():
        return []
    requirements = []
    for line in path.read_text(encoding='utf-8').splitlines():
        line = line.strip()
        if line and not line.startswith('#'):
            requirements.append(line)
    return requirements


setup(
    name='catalog-admin-console',
    version='1.0.0',
    description='Schema-driven create/edit forms for catalog entities, built on Streamlit',
    python_requires='>=3.9',
    packages=['form_engine'],
    py_modules=['streamlit_app'],
    install_requires=read_requirements(),
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
)
