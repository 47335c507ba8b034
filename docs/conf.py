# Sphinx configuration for the commitsig documentation.

import os
import sys

# autodoc imports the package from the source tree
sys.path.insert(0, os.path.abspath('../src'))

from commitsig import __VERSION__

project = 'commitsig'
copyright = '2026, commitsig contributors'
author = 'commitsig contributors'
version = __VERSION__
release = __VERSION__

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.intersphinx',
]

# Docstrings are Google style
napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_attr_annotations = True

master_doc = 'index'
source_suffix = '.rst'
exclude_patterns = ['_build']

html_theme = 'sphinx_rtd_theme'

autodoc_member_order = 'bysource'
autodoc_typehints = 'description'

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
}
