from kubestrap.main import app

app(prog_name="kubestrap")
