import setuptools
import os
import re

with open("README.md", "r") as fh:
    long_description = fh.read()

here = os.path.abspath(os.path.dirname(__file__))

def read(*parts):
    with open(os.path.join(here, *parts), 'r') as fp:
        return fp.read()

def find_version(*file_paths):
    version_file = read(*file_paths)
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]",
                              version_file, re.M)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version string.")

setuptools.setup(
    name="stacksync",
    version=find_version("stacksync", "__init__.py"),
    description="Keep a stack of commits in sync with a stack of GitHub pull requests",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=("stacksync", "stacksync.*")),
    include_package_data=True,
    package_data={
        'stacksync': ['py.typed', 'github_schema.graphql'],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.8',
    install_requires=[
        'requests',
        'typing_extensions>=3.7.2',
        'click>=8',
        # The fake GitHub endpoint used by the tests runs queries
        # against the bundled schema
        'graphql-core>=3',
    ],
    extras_require={
        'test': [
            'pytest',
            'expecttest',
        ],
    },
    entry_points={
        'console_scripts': [
            'stacksync = stacksync.cli:main'
        ]
    },
)
