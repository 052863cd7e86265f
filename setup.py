from setuptools import setup, find_packages

setup(
    name="melissa",
    version="0.1.0",
    packages=find_packages(exclude=["test", "test.*"]),
    install_requires=[
        "pandas>=1.0.0",
        "numpy>=1.19.0",
        "scipy>=1.5.0",
        "scikit-learn>=1.2.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        'console_scripts': [
            'melissa=melissa.cli:main',
        ],
    },
    author="Arian Abdi",
    author_email="arian.abdipour9@gmail.com",
    description="Joint clustering and imputation of single-cell DNA methylation profiles",
    keywords="methylation, single-cell, clustering, imputation, EM",
    python_requires=">=3.8",
)
