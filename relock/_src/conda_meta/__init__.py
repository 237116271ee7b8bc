# This module provides an interface for reading what is actually
# installed in an environment prefix. Conda packages keep one
# json record per package in the conda-meta directory, wheels
# installed on top of them keep a .dist-info directory in
# site-packages. Together they form the installed prefix record
# that lock documents are reconciled against.
from relock._src.conda_meta.conda_meta import CondaMeta, read_installed_prefix
