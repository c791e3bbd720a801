#!/usr/bin/env python

from setuptools import find_packages, setup

setup(
    name="membership-purge",
    version="1.0.0",
    description="Remove group memberships of disabled directory accounts",
    author="Directory Operations Team",
    packages=find_packages(),
    python_requires=">=3.8",
    install_requires=["ldap3>=2.9", "tornado>=6.1"],
    extras_require={
        "test": ["pytest>=7", "pytest-asyncio>=0.21", "testfixtures>=7"],
    },
    entry_points={
        "console_scripts": ["membership-purge = membership_purge.purge:main"],
    },
)
