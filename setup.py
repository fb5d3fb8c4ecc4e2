"""Packaging settings."""
import os
from codecs import open

from setuptools import find_packages
from setuptools import setup

here = os.path.abspath(os.path.dirname(__file__))


with open(os.path.join(here, "README.md"), "r", "utf-8") as fp:
    readme = fp.read()

about: dict = dict()
with open(os.path.join(here, "pymdseq", "__version__.py"), "r", "utf-8") as fp:
    exec(fp.read(), about)

setup(
    name="pymdseq",
    version=about["__version__"],
    python_requires=">=3.10.0",
    license="MIT",
    description="Mean-dispersion negative binomial GLMs for differential analysis.",
    long_description=readme,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*"]),
    install_requires=[
        "anndata>=0.8.0",
        "formulaic>=1.0.2",
        "formulaic-contrasts>=0.2.0",
        "joblib>=1.2.0",
        "numpy>=1.23.0",
        "pandas>=1.4.0",
        "scikit-learn>=1.1.0",
        "scipy>=1.11.0",
        "statsmodels",
    ],  # external packages as dependencies
    extras_require={
        "dev": [
            "pytest>=6.2.4",
            "pre-commit>=2.13.0",
            "coverage",
            "mypy",
            "pandas-stubs",
        ],
    },
)
