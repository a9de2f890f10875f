from setuptools import find_packages, setup

setup(
    name="pytest-zebrunner",
    version="0.1.0",
    description="pytest plugin reporting test runs, test cases, logs and artifacts to Zebrunner",
    entry_points={"pytest11": ["zebrunner = pytest_zebrunner.plugin"]},
    packages=find_packages(
        include=["*"],
        exclude=["tests*"],
    ),
    python_requires=">=3.8.1",
    install_requires=[
        "pytest",
        "pydantic>=2",
        "requests",
        "structlog",
    ],
    extras_require={
        "test": ["pytest-httpserver", "hypothesis", "werkzeug"],
    },
)
