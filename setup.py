"""setup.py: setuptools control."""

import io
import os

from setuptools import find_packages
from setuptools import setup

DESCRIPTION = """
Vanguard guard rotation and side channel detection for Tor onion services.
Runs next to a tor daemon and talks to it over the control port.
"""

# Read version and other info from package's __init.py file
module_info = {}
init_path = os.path.join(os.path.dirname(__file__), "src", 'hsvanguards',
                         '__init__.py')
with open(init_path) as init_file:
    exec(init_file.read(), module_info)

def read(*names, **kwargs):
    return io.open(
        os.path.join(os.path.dirname(__file__), *names),
        encoding=kwargs.get("encoding", "utf8")
    ).read()

setup(
    name="hsvanguards",
    packages=find_packages('src'),
    package_dir={'': 'src'},
    entry_points={
        "console_scripts": [
            'hsvanguards = hsvanguards.main:main',
        ]},
    description="Layer2 and layer3 guards and attack detection for onion services",
    long_description=DESCRIPTION,
    include_package_data=True,
    version=module_info.get('__version__'),
    author=module_info.get('__author__'),
    author_email=module_info.get('__contact__'),
    url=module_info.get('__url__'),
    license=module_info.get('__license__'),
    keywords='tor',
    python_requires='>=3.6',
    install_requires=[
        'setuptools',
        'stem>=1.8',
        ],
    extras_require={
        'test': ['pytest'],
        },
    classifiers=[
        'Development Status :: 4 - Beta',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
    ]
)
