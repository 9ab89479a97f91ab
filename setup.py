# -*- coding: utf-8 -*-
import setuptools
import pathlib
import site
import sys

# odd bug with develop (editable) installs, see: https://github.com/pypa/pip/issues/7953
site.ENABLE_USER_SITE = "--user" in sys.argv[1:]

required = [
    "numpy",
    "pyzmq",
    "loguru",
    "mashumaro>=3.11",
    "setproctitle",
    "click>=8.0.0",
]

extras = {
    "test": ["pytest"],
    "dev": ["pytest", "doit", "ruff", "pdoc3"],
}

here = pathlib.Path(__file__).parent.resolve()

long_description = (here / "README.md").read_text(encoding="utf-8")

# Read version
version = {}
with open("src/tagsync/_version.py", "r") as f:
    exec(f.read(), version)

if __name__ == "__main__":
    setuptools.setup(
        name="tagsync",
        version=version["__version__"],
        description="Synchronized acquisition and clock offset correlation for two time taggers.",
        long_description=long_description,
        long_description_content_type="text/markdown",
        keywords=[
            "time tagger",
            "time controller",
            "synchronization",
            "timestamps",
        ],
        classifiers=[
            "License :: OSI Approved :: MIT License",
            "Development Status :: 2 - Pre-Alpha",
        ],
        license="MIT",
        package_dir={"": "src"},
        packages=setuptools.find_packages(
            where="src",
            exclude=["*.test", "*.test.*", "test.*", "test", "test_*"],
        ),
        entry_points={
            "console_scripts": [
                "tagsync=tagsync.cli:cli",
            ],
        },
        install_requires=required,
        extras_require=extras,
        python_requires=">= 3.11",
        package_data={"": ["*.md", "*.json"]},
    )
