#+
# Setuptools script to install Wirebus. Make sure setuptools
# <https://setuptools.pypa.io/en/latest/index.html> is installed.
# Invoke from the command line in this directory as follows:
#
#     python3 setup.py build
#     sudo python3 setup.py install
#
# or, for development, “pip install -e .[test]”.
#
# Written by Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
#-

import setuptools

setuptools.setup \
  (
    name = "Wirebus",
    version = "1.0",
    description = "pure-Python client for D-Bus, for Python 3.7 or later",
    long_description =
        "pure-Python client engine for D-Bus: wire protocol, messages, connections"
        " and bus names, with no need for libdbus, for Python 3.7 or later",
    author = "Lawrence D'Oliveiro",
    author_email = "ldo@geek-central.gen.nz",
    url = "https://github.com/ldo/dbussy",
    license = "LGPL v2.1+",
    python_requires = ">=3.7",
    py_modules = ["wirebus", "omnibus"],
    extras_require =
        {
            "test" : ["pytest"],
        },
  )
