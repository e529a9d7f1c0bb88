"""
FactorForge — Setup Script
===========================
Installs FactorForge as a local editable package so that all internal
imports (e.g. `from factorforge.training.item2vec import Item2Vec`) work
seamlessly from any script or notebook.

Usage:
    cd /path/to/FactorForge
    pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name="factorforge",
    version="0.1.0",
    author="Aditya",
    description=(
        "FactorForge: Partition-Rotated Distributed Training of Item "
        "Embeddings with Checkpointed Resume"
    ),
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/aditya/FactorForge",
    packages=find_packages(include=["factorforge", "factorforge.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "safetensors>=0.4.0",
        "numpy>=1.24.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
)
