from setuptools import setup, find_packages


setup(
    name="succession",
    version="0.1",
    packages=find_packages(),
    description="A recursive, content-derived record registry with atomic, signed revisions.",
    author="vercingetorx",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
        "PyYAML>=6.0",
    ],
    entry_points={
        "console_scripts": [
            "succession=succession.cli:main",
        ]
    },
)
