#!/usr/bin/env python3
"""
Setup script for Windrow - windowed grouped aggregation over Arrow rows.
"""

from pathlib import Path
from setuptools import setup, find_packages

# Read README for long description
this_directory = Path(__file__).parent
readme_path = this_directory / "README.md"
long_description = ""
if readme_path.exists():
    long_description = readme_path.read_text()

setup(
    name="windrow",
    version="0.1.0",
    description="Windowed grouped aggregation (TUMBLE/HOP/SESSION) over Arrow rows",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Windrow Team",
    license="Apache-2.0",

    packages=find_packages(exclude=["tests*", "examples*", "docs*"]),
    include_package_data=True,

    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Distributed Computing",
    ],

    python_requires=">=3.8",

    install_requires=[
        "pyarrow>=10.0.0",
        "rich>=12.0.0",
        "typer>=0.7.0",
        "pydantic>=2.0.0",
        "orjson>=3.9.0",
        "prometheus-client>=0.19.0",
    ],

    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "hypothesis>=6.0.0",
        ],
    },

    # Entry points for command-line scripts
    entry_points={
        "console_scripts": [
            "windrow = windrow.cli:main",
        ],
    },

    # Package data
    package_data={
        "windrow": ["py.typed"],
    },

    zip_safe=False,
)
