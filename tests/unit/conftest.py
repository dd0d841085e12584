import aws_cdk as cdk
import pytest

from deployment.graph import build_graph
from deployment.settings import build_settings


@pytest.fixture
def settings():
    return build_settings(app_bucket_name="app-assets")


@pytest.fixture
def graph(settings):
    app = cdk.App()
    return build_graph(app, settings)
