from setuptools import setup, find_packages

setup(
    name="concolic-trace",
    version="0.1.0",
    packages=find_packages(include=["concolic_trace", "concolic_trace.*"]),
    python_requires=">=3.8",
    install_requires=[
        "z3-solver>=4.8.12",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        'console_scripts': [
            'concolic-trace=concolic_trace.cli:main',
        ],
    },
)
