"""
Setup script for VeilChat - Encrypted conversation core.

This library provides:
- Per-conversation AES-256-GCM keys shared through the backend record
- Race-free key bootstrap when participants open a conversation together
- Decrypted message views with ownership-checked edits and deletes
- Realtime refresh of the open conversation on remote inserts
- In-memory and SQLite backends
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='veilchat',
    version='1.0.0',
    description='Key lifecycle and message pipeline for end-to-end encrypted conversations',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
    install_requires=[
        'cryptography>=42.0.4',
        'aiofiles>=23.2.1',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
        ],
    },
)
