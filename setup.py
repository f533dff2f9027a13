#!/usr/bin/env python
from setuptools import setup, find_packages

setup(
    name="someipcodec",
    version="0.1.0",
    description="SOME/IP message codec with TP reassembly and payload serialization",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.8",
    install_requires=[],
    test_suite="tests",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Topic :: System :: Networking",
        "Topic :: Software Development :: Libraries",
        "Intended Audience :: Developers",
    ],
)
