from tenant_mail_relay.server import main


if __name__ == "__main__":
    main()
