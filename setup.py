#!/usr/bin/env python3

from setuptools import setup
import os

# Read long description safely
long_description = "Block IPs from the IPsum threat list with ipset and iptables"
if os.path.exists("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="ipsum-blocker",
    version="1.0.0",
    description="Block IPs from the IPsum threat list with ipset and iptables",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["ipsum_blocker"],
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.25.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ipsum-blocker=ipsum_blocker:main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Networking :: Firewalls",
        "Topic :: Security",
    ],
)
