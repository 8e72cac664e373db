from setuptools import setup, find_packages
import pathlib

# Detect layout
use_src = pathlib.Path("src/loadtools").exists()
pkg_args = {"package_dir": {"": "src"}, "packages": find_packages(where="src")} if use_src \
           else {"packages": find_packages(where=".")}

setup(
    name="load-tools",
    version="0.1.0",
    description="Validated, transformed bulk loads driven through an external loader",
    python_requires=">=3.9",
    include_package_data=True,
    package_data={
        "loadtools": [
            "logging.yaml",
            "templates/control/*.j2",
            "schemas/*.json",
        ],
    },
    install_requires=[
        "jinja2>=3.0",
        "pyyaml>=6.0",
        "typer>=0.9",
        "pydantic>=2.0",
        "pandas>=1.5",
        "jsonschema>=4.0",
        "phonenumbers>=8.13",
        "sqlalchemy>=2.0",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "load-tools=loadtools.cli:app",
        ],
    },
    **pkg_args
)
