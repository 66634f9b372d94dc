from setuptools import setup, find_packages

setup(
    name="pyfreesurface",
    version="0.1.0",
    author="Bolding-Bruggeman ApS",
    author_email="jorn@bolding-bruggeman.com",
    license="GPL",
    packages=find_packages(include=["pyfreesurface*"]),
    python_requires=">=3.8",
    install_requires=["numpy", "scipy>=1.12", "mpi4py", "xarray", "cftime", "pyyaml"],
    extras_require={"test": ["pytest"]},
    zip_safe=False,
)
