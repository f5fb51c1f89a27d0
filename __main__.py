import pulumi

import infra

# Export the Load Balancer DNS name; `curl http://<clb_dns_name>` answers "Hello, World"
pulumi.export("clb_dns_name", infra.load_balancer.dns_name)
