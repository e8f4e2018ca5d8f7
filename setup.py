from setuptools import find_packages, setup

setup(
    name="ensemble_forecast",
    version="25.1.0",
    packages=find_packages(include=["ensemble_forecast", "ensemble_forecast.*"]),
    package_data={"ensemble_forecast.default_parameters": ["*/defaults.yaml"]},
    python_requires=">=3.11",
    install_requires=[
        "numpy",
        "pandas",
        "pyyaml",
        "schema",
        "tqdm",
    ],
    extras_require={"test": ["pytest"]},
)
